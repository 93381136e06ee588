from __future__ import annotations

import json
import logging
import time
from collections.abc import Hashable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

from .models import Target

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class NodeGroup:
    key: str
    name: str
    color: str = ""
    nodes: list[Target] = field(default_factory=list)


DEFAULT_GROUPS: dict[str, dict] = {
    "fast": {
        "name": "Fast nodes",
        "color": "#FF7D00",
        "nodes": [
            {"id": 1, "name": "Hong Kong CN2", "url": "https://speed.hkcdn.net"},
            {
                "id": 2,
                "name": "Tokyo SoftBank",
                "url": "https://speed.tokyo01.sakura.ne.jp",
            },
            {
                "id": 3,
                "name": "Singapore direct",
                "url": "https://speed.singapore1.leaseweb.net",
            },
            {"id": 4, "name": "Los Angeles", "url": "https://speed.lax1.leaseweb.net"},
        ],
    },
    "isp": {
        "name": "Carrier nodes",
        "color": "#6600CC",
        "nodes": [
            {"id": 5, "name": "Beijing Unicom", "url": "https://speed.bjtelecom.net.cn"},
            {
                "id": 6,
                "name": "Guangzhou Mobile",
                "url": "https://speed.gd.chinamobile.com",
            },
            {
                "id": 7,
                "name": "Shanghai Telecom",
                "url": "https://speed.shtelecom.net.cn",
            },
        ],
    },
    "factory": {
        "name": "Software mirrors",
        "color": "#E60012",
        "nodes": [
            {"id": 8, "name": "Aliyun Hangzhou", "url": "https://speed.aliyun.com"},
            {
                "id": 9,
                "name": "Tencent Shenzhen",
                "url": "https://speed.cloud.tencent.com",
            },
            {"id": 10, "name": "Baidu Beijing", "url": "https://speed.baidu.com"},
        ],
    },
}


def _parse_nodes(raw_nodes: object) -> list[Target]:
    nodes: list[Target] = []
    if not isinstance(raw_nodes, list):
        return nodes
    for item in raw_nodes:
        if not isinstance(item, dict):
            continue
        node_id = item.get("id")
        url = str(item.get("url", "")).strip()
        if node_id is None or not url:
            continue
        nodes.append(Target(id=node_id, name=str(item.get("name", url)), url=url))
    return nodes


def parse_groups(data: object) -> dict[str, NodeGroup] | None:
    """Parse ``{"groups": {key: {name, color, nodes}}}``; None when unusable."""
    if not isinstance(data, dict):
        return None
    raw_groups = data.get("groups")
    if not isinstance(raw_groups, dict) or not raw_groups:
        return None

    groups: dict[str, NodeGroup] = {}
    for key, raw in raw_groups.items():
        if not isinstance(raw, dict):
            continue
        groups[str(key)] = NodeGroup(
            key=str(key),
            name=str(raw.get("name", key)),
            color=str(raw.get("color", "")),
            nodes=_parse_nodes(raw.get("nodes")),
        )
    return groups or None


def default_groups() -> dict[str, NodeGroup]:
    return parse_groups({"groups": DEFAULT_GROUPS}) or {}


class NodeCatalog:
    """Selectable targets organised in groups, plus user supplied custom nodes."""

    def __init__(self, groups: dict[str, NodeGroup] | None = None) -> None:
        self.groups = groups if groups else default_groups()
        self.custom: list[Target] = []

    def group(self, key: str) -> NodeGroup | None:
        return self.groups.get(key)

    def group_keys(self) -> list[str]:
        return list(self.groups)

    def all_targets(self) -> list[Target]:
        targets: list[Target] = []
        for group in self.groups.values():
            targets.extend(group.nodes)
        return targets + self.custom

    def add_custom(self, name: str, url: str) -> Target:
        name = name.strip()
        url = url.strip()
        if not name or not url:
            raise ValueError("Custom node needs both a name and a url")
        base_id = f"custom-{int(time.time() * 1000)}"
        existing = {node.id for node in self.custom}
        node_id = base_id
        suffix = 1
        while node_id in existing:
            node_id = f"{base_id}-{suffix}"
            suffix += 1
        target = Target(id=node_id, name=name, url=url)
        self.custom.append(target)
        return target

    def remove_custom(self, node_id: Hashable) -> bool:
        before = len(self.custom)
        self.custom = [node for node in self.custom if node.id != node_id]
        return len(self.custom) != before

    def select(self, ids: Iterable[Hashable]) -> list[Target]:
        wanted = set(ids)
        return [target for target in self.all_targets() if target.id in wanted]

    def targets_for(
        self, group_key: str, ids: Iterable[Hashable] | None = None
    ) -> list[Target]:
        """Targets for a session: picked ids (or the group), then custom nodes."""
        ids = list(ids or ())
        if ids:
            chosen = self.select(ids)
        else:
            group = self.group(group_key)
            chosen = list(group.nodes) if group is not None else []
        seen = {target.id for target in chosen}
        return chosen + [node for node in self.custom if node.id not in seen]


def parse_custom_node(text: str) -> tuple[str, str]:
    """Split ``NAME=URL`` into its parts."""
    name, sep, url = text.partition("=")
    if not sep or not name.strip() or not url.strip():
        raise ValueError(f"Expected NAME=URL, got {text!r}")
    return name.strip(), url.strip()


def parse_node_ids(text: str) -> list[Hashable]:
    """Comma separated ids; numeric ones become ints like the catalog ids."""
    ids: list[Hashable] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        ids.append(int(part) if part.isdigit() else part)
    return ids


def load_catalog(path: str | Path) -> NodeCatalog:
    """Read node groups from a JSON file, falling back to the built-in groups."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.info("Node file %s not found, using default groups", path)
        return NodeCatalog()
    except (OSError, ValueError) as exc:
        logger.warning("Node file %s unreadable (%s), using default groups", path, exc)
        return NodeCatalog()

    groups = parse_groups(data)
    if groups is None:
        logger.warning("Node file %s has no usable groups, using default groups", path)
        return NodeCatalog()
    logger.info("Loaded %d node groups from %s", len(groups), path)
    return NodeCatalog(groups)
