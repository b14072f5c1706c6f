"""
Explicit region containment: Kommune -> Fylke -> Country.

Ancestor checks always go through this table. Region names are matched
case-insensitively but a region type must always be given, since the same
name can exist on several levels (Oslo is both a fylke and a kommune).
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from shared.errors import InvalidRegion
from shared.logging import get_logger
from ..rules.models import RegionType, parse_region_type
from .norway import NORWAY


RegionKey = Tuple[RegionType, str]


class RegionHierarchyError(Exception):
    """The containment table is malformed or could not be loaded."""


@dataclass(frozen=True)
class RegionRef:
    name: str
    region_type: RegionType

    @property
    def key(self) -> RegionKey:
        return region_key(self.name, self.region_type)


def region_key(name: str, region_type: RegionType) -> RegionKey:
    return (region_type, name.strip().casefold())


class RegionHierarchy:
    """In-memory containment table built once per process."""

    def __init__(self, table: Mapping[str, Mapping[str, Iterable[str]]]):
        self.logger = get_logger("policy.regions")
        self._nodes: Dict[RegionKey, RegionRef] = {}
        self._parents: Dict[RegionKey, RegionKey] = {}
        self._children: Dict[RegionKey, List[RegionKey]] = {}

        for country, fylker in table.items():
            country_key = self._add(country, RegionType.COUNTRY, None)
            if not isinstance(fylker, Mapping):
                raise RegionHierarchyError(f"Fylker of '{country}' must be a mapping")
            for fylke, kommuner in fylker.items():
                fylke_key = self._add(fylke, RegionType.FYLKE, country_key)
                for kommune in kommuner:
                    self._add(kommune, RegionType.KOMMUNE, fylke_key)

    @classmethod
    def default(cls) -> "RegionHierarchy":
        return cls(NORWAY)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "RegionHierarchy":
        try:
            with open(path, encoding="utf-8") as handle:
                table = json.load(handle)
        except (OSError, json.JSONDecodeError) as e:
            raise RegionHierarchyError(f"Cannot load region hierarchy from {path}: {e}") from e
        return cls(table)

    def _add(self, name: str, region_type: RegionType, parent: Optional[RegionKey]) -> RegionKey:
        if not isinstance(name, str) or not name.strip():
            raise RegionHierarchyError("Region names must be non-empty strings")
        key = region_key(name, region_type)
        existing_parent = self._parents.get(key)
        if key in self._nodes and existing_parent != parent:
            raise RegionHierarchyError(
                f"{region_type.value} '{name}' is listed under more than one parent"
            )
        self._nodes[key] = RegionRef(name=name.strip(), region_type=region_type)
        self._children.setdefault(key, [])
        if parent is not None:
            self._parents[key] = parent
            if key not in self._children[parent]:
                self._children[parent].append(key)
        return key

    def __len__(self) -> int:
        return len(self._nodes)

    def contains(self, name: str, region_type: Union[RegionType, str]) -> bool:
        return region_key(name, parse_region_type(region_type)) in self._nodes

    def lookup(self, name: str, region_type: Union[RegionType, str]) -> RegionRef:
        """Return the canonical region, raising InvalidRegion when it is unknown."""
        rtype = parse_region_type(region_type)
        if not name or not name.strip():
            raise InvalidRegion("Region is required")
        ref = self._nodes.get(region_key(name, rtype))
        if ref is None:
            raise InvalidRegion(
                f"Unknown {rtype.value} '{name}'",
                {"region": name, "region_type": rtype.value}
            )
        return ref

    def ancestors(self, name: str, region_type: Union[RegionType, str]) -> List[RegionRef]:
        """Ancestors of a region, nearest first."""
        key = self.lookup(name, region_type).key
        chain: List[RegionRef] = []
        seen = {key}
        parent = self._parents.get(key)
        while parent is not None:
            if parent in seen:
                raise RegionHierarchyError(f"Cycle in region hierarchy at {parent}")
            seen.add(parent)
            chain.append(self._nodes[parent])
            parent = self._parents.get(parent)
        return chain

    def descendants(self, name: str, region_type: Union[RegionType, str]) -> List[RegionRef]:
        """All regions contained in the given one, breadth first."""
        root = self.lookup(name, region_type).key
        found: List[RegionRef] = []
        queue = list(self._children.get(root, []))
        while queue:
            key = queue.pop(0)
            found.append(self._nodes[key])
            queue.extend(self._children.get(key, []))
        return found

    def is_ancestor(self, ancestor: RegionRef, region: RegionRef) -> bool:
        return any(ref.key == ancestor.key for ref in self.ancestors(region.name, region.region_type))

    def regions(self, region_type: Optional[RegionType] = None) -> List[RegionRef]:
        return [
            ref for ref in self._nodes.values()
            if region_type is None or ref.region_type == region_type
        ]
