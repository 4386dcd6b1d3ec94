"""Matching rules that say which API resources to watch."""

from __future__ import annotations

import itertools
import json
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from clusteroperator.kube import GroupVersionResource


class UnexpectedGVRStringError(ValueError):
    """Raised for a malformed Group Version Resource string."""

    def __init__(self, message: str = "unexpected Group Version Resource string") -> None:
        super().__init__(message)


def _string_list(value: Any, key: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{key} must be a list of strings")
    return list(value)


def _lower(data: dict) -> dict:
    return {k.lower(): v for k, v in data.items()}


@dataclass
class APIResourceMatch:
    """Matches any combination of the listed groups, versions and resources."""

    groups: list = field(default_factory=list)
    versions: list = field(default_factory=list)
    resources: list = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "APIResourceMatch":
        if not isinstance(data, dict):
            raise ValueError("API resource match must be an object")
        low = _lower(data)
        return cls(groups=_string_list(low.get("apigroups"), "apiGroups"),
                   versions=_string_list(low.get("apiversions"), "apiVersions"),
                   resources=_string_list(low.get("resources"), "resources"))


@dataclass
class MatchingRules:
    api_resources: list = field(default_factory=list)
    namespaces: list = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "MatchingRules":
        if not isinstance(data, dict):
            raise ValueError("matching rules must be an object")
        low = _lower(data)
        matches = low.get("match") or []
        if not isinstance(matches, list):
            raise ValueError("match must be a list")
        return cls(api_resources=[APIResourceMatch.from_dict(m) for m in matches],
                   namespaces=_string_list(low.get("namespaces"), "namespaces"))


class _Fetcher(Protocol):
    def fetch(self) -> Optional[MatchingRules]: ...


class _Reader(Protocol):
    def read(self) -> Any: ...


def match_rule_to_gvr(api_match: APIResourceMatch) -> list:
    """Expand a match into every group, version and resource combination."""
    return [GroupVersionResource(group=g, version=v, resource=r)
            for g, v, r in itertools.product(api_match.groups, api_match.versions,
                                              api_match.resources)]


def parse_matching_rules(reader: _Reader) -> Optional[MatchingRules]:
    """Read JSON matching rules; raises ValueError on malformed input."""
    data = reader.read()
    parsed = json.loads(data)
    if parsed is None:
        return None
    return MatchingRules.from_dict(parsed)


class TargetLoader:
    """Turns fetched matching rules into the resources to watch."""

    def __init__(self, fetcher: _Fetcher) -> None:
        self.fetcher = fetcher

    def load_gvrs(self) -> list:
        rules = self.fetcher.fetch()
        if rules is None:
            return []
        return [gvr for match in rules.api_resources for gvr in match_rule_to_gvr(match)]


class FileFetcher:
    """Fetches matching rules from a readable file object."""

    def __init__(self, reader: _Reader) -> None:
        self.reader = reader

    def fetch(self) -> Optional[MatchingRules]:
        return parse_matching_rules(self.reader)