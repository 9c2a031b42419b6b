"""Domain, IP address and port filters for network traffic."""

from __future__ import annotations

import ipaddress
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPLike = Union[str, IPAddress, None]

_PORT_RE = re.compile(r"[0-9]+")


class FilterError(ValueError):
    """Raised when a filter specification is invalid."""


class Mode(Enum):
    """Whether matching items are included or excluded."""

    INCLUDE = "include"
    EXCLUDE = "exclude"


class Operator(Enum):
    """How a composite filter combines its sub-filters."""

    AND = "AND"
    OR = "OR"


def _normalize(ip: IPLike) -> Optional[IPAddress]:
    """Turn an address into an ipaddress object, unwrapping IPv4-mapped IPv6."""
    if ip is None:
        return None
    if isinstance(ip, str):
        try:
            ip = ipaddress.ip_address(ip)
        except ValueError as exc:
            raise FilterError(f"invalid IP address {ip!r}") from exc
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _format_list(items: list[str]) -> str:
    return "[" + " ".join(items) + "]"


class Filter(ABC):
    """Base class of all packet filters."""

    @abstractmethod
    def match(self, domain: str, ip: IPLike, port: int) -> bool:
        """Return True if the filter accepts the given parameters."""

    def _apply_mode(self, matched: bool) -> bool:
        return matched if self.mode is Mode.INCLUDE else not matched

    mode: Mode = Mode.INCLUDE


@dataclass(frozen=True)
class _DomainPattern:
    original: str
    regex: Optional[re.Pattern] = None
    exact: str = ""
    suffix: str = ""

    @classmethod
    def parse(cls, pattern: str) -> "_DomainPattern":
        if pattern.startswith("/") and pattern.endswith("/") and len(pattern) > 2:
            try:
                regex = re.compile(pattern[1:-1])
            except re.error as exc:
                raise FilterError(f"invalid regex: {exc}") from exc
            return cls(original=pattern, regex=regex)
        if pattern.startswith("*."):
            return cls(original=pattern, suffix=pattern[1:].lower())
        return cls(original=pattern, exact=pattern.lower())

    def matches(self, domain: str) -> bool:
        if self.regex is not None:
            return self.regex.search(domain) is not None
        if self.suffix:
            return domain.endswith(self.suffix) or domain == self.suffix[1:]
        return domain == self.exact


class DomainFilter(Filter):
    """Filters by domain: exact names, "*.example.com" wildcards or "/regex/"."""

    def __init__(self, patterns: list[str], mode: Mode) -> None:
        self.mode = mode
        self._patterns: list[_DomainPattern] = []
        for pattern in patterns:
            try:
                self._patterns.append(_DomainPattern.parse(pattern))
            except FilterError as exc:
                raise FilterError(f"invalid domain pattern {pattern!r}: {exc}") from exc

    def match(self, domain: str, ip: IPLike, port: int) -> bool:
        if not domain:
            return self.mode is Mode.EXCLUDE
        domain = domain.lower()
        return self._apply_mode(any(p.matches(domain) for p in self._patterns))

    def __str__(self) -> str:
        originals = [p.original for p in self._patterns]
        return f"DomainFilter({self.mode.value}: {_format_list(originals)})"


class IPFilter(Filter):
    """Filters by single IP addresses or CIDR ranges, IPv4 or IPv6."""

    def __init__(self, addresses: list[str], mode: Mode) -> None:
        self.mode = mode
        self._ips: list[IPAddress] = []
        self._networks: list[IPNetwork] = []
        for addr in addresses:
            if "/" in addr:
                try:
                    network = ipaddress.ip_network(addr, strict=False)
                except ValueError as exc:
                    raise FilterError(f"invalid CIDR {addr!r}: {exc}") from exc
                self._networks.append(network)
            else:
                try:
                    parsed = ipaddress.ip_address(addr)
                except ValueError as exc:
                    raise FilterError(f"invalid IP address {addr!r}") from exc
                self._ips.append(_normalize(parsed))

    def match(self, domain: str, ip: IPLike, port: int) -> bool:
        address = _normalize(ip)
        if address is None:
            return self.mode is Mode.EXCLUDE
        matched = address in self._ips or any(
            address.version == net.version and address in net for net in self._networks
        )
        return self._apply_mode(matched)

    def __str__(self) -> str:
        parts = [str(ip) for ip in self._ips] + [str(net) for net in self._networks]
        return f"IPFilter({self.mode.value}: {_format_list(parts)})"


def _parse_port(text: str) -> int:
    text = text.strip()
    if not _PORT_RE.fullmatch(text):
        raise FilterError(f"invalid syntax: {text!r}")
    port = int(text)
    if port > 0xFFFF:
        raise FilterError(f"value out of range: {text!r}")
    if port == 0:
        raise FilterError("port cannot be 0")
    return port


class PortFilter(Filter):
    """Filters by port numbers or inclusive ranges such as "8000-8080"."""

    def __init__(self, ports: list[str], mode: Mode) -> None:
        self.mode = mode
        self._ports: list[int] = []
        self._ranges: list[tuple[int, int]] = []
        for spec in ports:
            if "-" in spec:
                start_text, end_text = spec.split("-", 1)
                try:
                    start = _parse_port(start_text)
                except FilterError as exc:
                    raise FilterError(
                        f"invalid port range start {start_text!r}: {exc}"
                    ) from exc
                try:
                    end = _parse_port(end_text)
                except FilterError as exc:
                    raise FilterError(
                        f"invalid port range end {end_text!r}: {exc}"
                    ) from exc
                if start > end:
                    raise FilterError(
                        f"invalid port range: start {start} > end {end}"
                    )
                self._ranges.append((start, end))
            else:
                try:
                    self._ports.append(_parse_port(spec))
                except FilterError as exc:
                    raise FilterError(f"invalid port {spec!r}: {exc}") from exc

    def match(self, domain: str, ip: IPLike, port: int) -> bool:
        if not port:
            return self.mode is Mode.EXCLUDE
        matched = port in self._ports or any(
            start <= port <= end for start, end in self._ranges
        )
        return self._apply_mode(matched)

    def __str__(self) -> str:
        parts = [str(p) for p in self._ports]
        parts += [f"{start}-{end}" for start, end in self._ranges]
        return f"PortFilter({self.mode.value}: {_format_list(parts)})"


class CompositeFilter(Filter):
    """Combines filters: AND needs all to match, OR needs at least one."""

    def __init__(self, filters: list[Filter], op: Operator) -> None:
        self.filters = list(filters)
        self.op = op

    def match(self, domain: str, ip: IPLike, port: int) -> bool:
        if not self.filters:
            return True
        results = (f.match(domain, ip, port) for f in self.filters)
        return all(results) if self.op is Operator.AND else any(results)

    def __str__(self) -> str:
        inner = ", ".join(str(f) for f in self.filters)
        return f"CompositeFilter({self.op.value}: [{inner}])"


@dataclass
class FilterConfig:
    """Filter settings; empty include lists mean everything is included."""

    include_domains: list[str] = field(default_factory=list)
    exclude_domains: list[str] = field(default_factory=list)
    include_ips: list[str] = field(default_factory=list)
    exclude_ips: list[str] = field(default_factory=list)
    include_ports: list[str] = field(default_factory=list)
    exclude_ports: list[str] = field(default_factory=list)


def build_filter(cfg: Optional[FilterConfig]) -> Optional[Filter]:
    """Build a filter from configuration, or None if nothing is configured."""
    if cfg is None:
        return None

    specs = [
        (DomainFilter, cfg.include_domains, Mode.INCLUDE, "include domain filter"),
        (DomainFilter, cfg.exclude_domains, Mode.EXCLUDE, "exclude domain filter"),
        (IPFilter, cfg.include_ips, Mode.INCLUDE, "include IP filter"),
        (IPFilter, cfg.exclude_ips, Mode.EXCLUDE, "exclude IP filter"),
        (PortFilter, cfg.include_ports, Mode.INCLUDE, "include port filter"),
        (PortFilter, cfg.exclude_ports, Mode.EXCLUDE, "exclude port filter"),
    ]

    filters: list[Filter] = []
    for factory, values, mode, label in specs:
        if not values:
            continue
        try:
            filters.append(factory(values, mode))
        except FilterError as exc:
            raise FilterError(f"{label}: {exc}") from exc

    if not filters:
        return None
    if len(filters) == 1:
        return filters[0]
    return CompositeFilter(filters, Operator.AND)