"""
Route table for the Gateway.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

CATCH_ALL_PREFIX = "/"

PROXY = "proxy"
STATIC = "static"


class RouteConfigurationError(ValueError):
    """Raised at startup when the configured routes are inconsistent."""


@dataclass(frozen=True)
class RouteRule:
    """Maps a path prefix to an upstream base URL or a static directory."""

    prefix: str
    target: str
    kind: str = PROXY
    strip_prefix: bool = False

    @property
    def is_catch_all(self) -> bool:
        return self.prefix == CATCH_ALL_PREFIX

    @property
    def is_static(self) -> bool:
        return self.kind == STATIC

    def matches(self, path: str) -> bool:
        """Prefix match on path-segment boundaries."""
        if self.is_catch_all:
            return True
        return path == self.prefix or path.startswith(self.prefix + "/")

    def upstream_path(self, path: str) -> str:
        if not self.strip_prefix or self.is_catch_all:
            return path
        return path[len(self.prefix):] or "/"


def _normalize_prefix(prefix: str) -> str:
    prefix = prefix.strip()
    if not prefix.startswith("/"):
        raise RouteConfigurationError(f"Route prefix must start with '/': {prefix!r}")
    return prefix.rstrip("/") or CATCH_ALL_PREFIX


def _validate_upstream(url: str) -> str:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise RouteConfigurationError(f"Upstream must be an absolute http(s) URL: {url!r}")
    return url.rstrip("/")


class RouteTable:
    """Validated, ordered, read-only list of route rules.

    Longer prefixes are tried first and the catch-all, if any, is tried last.
    With a catch-all present every path matches something.
    """

    def __init__(self, rules: Iterable[RouteRule]):
        normalized: List[RouteRule] = []
        seen = set()
        for rule in rules:
            if rule.kind not in (PROXY, STATIC):
                raise RouteConfigurationError(f"Unknown route kind: {rule.kind!r}")
            prefix = _normalize_prefix(rule.prefix)
            if prefix in seen:
                if prefix == CATCH_ALL_PREFIX:
                    raise RouteConfigurationError("At most one catch-all route is allowed")
                raise RouteConfigurationError(f"Duplicate route prefix: {prefix!r}")
            if rule.kind == STATIC and prefix == CATCH_ALL_PREFIX:
                raise RouteConfigurationError("The catch-all route must be a proxy route")
            seen.add(prefix)
            target = _validate_upstream(rule.target) if rule.kind == PROXY else rule.target
            normalized.append(RouteRule(prefix=prefix, target=target, kind=rule.kind, strip_prefix=rule.strip_prefix))

        normalized.sort(key=lambda rule: (rule.is_catch_all, -len(rule.prefix)))
        self._rules: Tuple[RouteRule, ...] = tuple(normalized)

    @property
    def rules(self) -> Tuple[RouteRule, ...]:
        return self._rules

    @property
    def catch_all(self) -> Optional[RouteRule]:
        if self._rules and self._rules[-1].is_catch_all:
            return self._rules[-1]
        return None

    def match(self, path: str) -> Optional[RouteRule]:
        for rule in self._rules:
            if rule.matches(path):
                return rule
        return None

    def __len__(self) -> int:
        return len(self._rules)

    def describe(self) -> List[dict]:
        return [
            {"prefix": rule.prefix, "kind": rule.kind, "strip_prefix": rule.strip_prefix}
            for rule in self._rules
        ]


def parse_upstream_routes(value: str) -> List[RouteRule]:
    """Parse ``"/orders=http://orders:7000,/auth=http://auth:6000"``.

    A leading ``-`` on the prefix (``-/auth=...``) asks for the prefix to be
    stripped before forwarding.
    """
    rules = []
    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        prefix, sep, target = entry.partition("=")
        if not sep or not target.strip():
            raise RouteConfigurationError(f"Malformed upstream route: {entry!r}")
        strip_prefix = prefix.startswith("-")
        rules.append(RouteRule(prefix=prefix.lstrip("-"), target=target.strip(), strip_prefix=strip_prefix))
    return rules


def build_route_table(config) -> RouteTable:
    """Assemble the table from gateway configuration."""
    rules = parse_upstream_routes(config.upstream_routes)
    if config.static_prefix:
        rules.append(RouteRule(prefix=config.static_prefix, target=config.static_dir, kind=STATIC))
    if config.default_upstream_url and not any(
        _normalize_prefix(rule.prefix) == CATCH_ALL_PREFIX for rule in rules
    ):
        rules.append(RouteRule(prefix=CATCH_ALL_PREFIX, target=config.default_upstream_url))
    return RouteTable(rules)
