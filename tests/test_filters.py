import pytest

from wiretap.filters import (
    CompositeFilter,
    DomainFilter,
    FilterConfig,
    FilterError,
    IPFilter,
    Mode,
    Operator,
    PortFilter,
    build_filter,
)

INC = Mode.INCLUDE
EXC = Mode.EXCLUDE


@pytest.mark.parametrize(
    "patterns,mode,domain,want",
    [
        (["example.com"], INC, "example.com", True),
        (["example.com"], INC, "other.com", False),
        (["example.com"], EXC, "example.com", False),
        (["example.com"], EXC, "other.com", True),
        (["Example.COM"], INC, "example.com", True),
        (["example.com", "test.org"], INC, "test.org", True),
    ],
)
def test_domain_exact(patterns, mode, domain, want):
    assert DomainFilter(patterns, mode).match(domain, None, 0) is want


@pytest.mark.parametrize(
    "patterns,mode,domain,want",
    [
        (["*.example.com"], INC, "www.example.com", True),
        (["*.example.com"], INC, "api.v2.example.com", True),
        (["*.example.com"], INC, "example.com", True),
        (["*.example.com"], INC, "example.org", False),
        (["*.internal.com"], EXC, "api.internal.com", False),
    ],
)
def test_domain_wildcard(patterns, mode, domain, want):
    assert DomainFilter(patterns, mode).match(domain, None, 0) is want


@pytest.mark.parametrize(
    "patterns,mode,domain,want",
    [
        ([r"/.*\.example\.com/"], INC, "www.example.com", True),
        ([r"/^api\./"], INC, "www.example.com", False),
        ([r"/^api\./"], INC, "api.example.com", True),
        (["/test/"], EXC, "test.example.com", False),
    ],
)
def test_domain_regex(patterns, mode, domain, want):
    assert DomainFilter(patterns, mode).match(domain, None, 0) is want


def test_domain_invalid_regex():
    with pytest.raises(FilterError):
        DomainFilter(["/[invalid/"], INC)


def test_domain_empty():
    assert DomainFilter(["example.com"], INC).match("", None, 0) is False
    assert DomainFilter(["example.com"], EXC).match("", None, 0) is True


def test_domain_str():
    s = str(DomainFilter(["example.com", "*.test.org"], INC))
    assert "DomainFilter" in s and "include" in s
    assert s == "DomainFilter(include: [example.com *.test.org])"


@pytest.mark.parametrize(
    "addresses,mode,ip,want",
    [
        (["192.168.1.1"], INC, "192.168.1.1", True),
        (["192.168.1.1"], INC, "192.168.1.2", False),
        (["::1"], INC, "::1", True),
        (["10.0.0.1"], EXC, "10.0.0.1", False),
        (["10.0.0.1"], EXC, "10.0.0.2", True),
    ],
)
def test_ip_single(addresses, mode, ip, want):
    assert IPFilter(addresses, mode).match("", ip, 0) is want


@pytest.mark.parametrize(
    "addresses,mode,ip,want",
    [
        (["192.168.1.0/24"], INC, "192.168.1.100", True),
        (["192.168.1.0/24"], INC, "192.168.2.1", False),
        (["10.0.0.0/8"], INC, "10.255.255.255", True),
        (["fe80::/10"], INC, "fe80::1", True),
        (["172.16.0.0/12"], EXC, "172.20.1.1", False),
        (["10.0.0.0/8", "172.16.0.0/12"], INC, "172.20.1.1", True),
    ],
)
def test_ip_cidr(addresses, mode, ip, want):
    assert IPFilter(addresses, mode).match("", ip, 0) is want


def test_ip_mapped_ipv4_matches():
    assert IPFilter(["192.168.1.1"], INC).match("", "::ffff:192.168.1.1", 0) is True


@pytest.mark.parametrize("addresses", [["not-an-ip"], ["192.168.1.0/33"]])
def test_ip_invalid(addresses):
    with pytest.raises(FilterError):
        IPFilter(addresses, INC)


def test_ip_none():
    assert IPFilter(["192.168.1.1"], INC).match("", None, 0) is False
    assert IPFilter(["192.168.1.1"], EXC).match("", None, 0) is True


def test_ip_str():
    s = str(IPFilter(["192.168.1.1", "10.0.0.0/8"], INC))
    assert "IPFilter" in s and "include" in s
    assert s == "IPFilter(include: [192.168.1.1 10.0.0.0/8])"


@pytest.mark.parametrize(
    "ports,mode,port,want",
    [
        (["80"], INC, 80, True),
        (["80"], INC, 443, False),
        (["22"], EXC, 22, False),
        (["22"], EXC, 80, True),
        (["80", "443", "8080"], INC, 443, True),
    ],
)
def test_port_single(ports, mode, port, want):
    assert PortFilter(ports, mode).match("", None, port) is want


@pytest.mark.parametrize(
    "ports,mode,port,want",
    [
        (["8000-8080"], INC, 8000, True),
        (["8000-8080"], INC, 8080, True),
        (["8000-8080"], INC, 8040, True),
        (["8000-8080"], INC, 7999, False),
        (["8000-8080"], INC, 8081, False),
        (["1-1024"], EXC, 22, False),
        (["80", "8000-8080"], INC, 8040, True),
    ],
)
def test_port_range(ports, mode, port, want):
    assert PortFilter(ports, mode).match("", None, port) is want


@pytest.mark.parametrize(
    "ports", [["http"], ["65536"], ["0"], ["abc-100"], ["100-xyz"], ["100-50"]]
)
def test_port_invalid(ports):
    with pytest.raises(FilterError):
        PortFilter(ports, INC)


def test_port_zero():
    assert PortFilter(["80"], INC).match("", None, 0) is False
    assert PortFilter(["80"], EXC).match("", None, 0) is True


def test_port_str():
    s = str(PortFilter(["80", "8000-8080"], INC))
    assert "PortFilter" in s and "include" in s
    assert s == "PortFilter(include: [80 8000-8080])"


@pytest.fixture
def pair():
    return [DomainFilter(["example.com"], INC), PortFilter(["443"], INC)]


@pytest.mark.parametrize(
    "domain,port,want",
    [
        ("example.com", 443, True),
        ("example.com", 80, False),
        ("other.com", 443, False),
        ("other.com", 80, False),
    ],
)
def test_composite_and(pair, domain, port, want):
    assert CompositeFilter(pair, Operator.AND).match(domain, None, port) is want


@pytest.mark.parametrize(
    "domain,port,want",
    [
        ("example.com", 443, True),
        ("example.com", 80, True),
        ("other.com", 443, True),
        ("other.com", 80, False),
    ],
)
def test_composite_or(pair, domain, port, want):
    assert CompositeFilter(pair, Operator.OR).match(domain, None, port) is want


def test_composite_empty():
    assert CompositeFilter([], Operator.AND).match("anything", None, 80) is True
    assert CompositeFilter([], Operator.OR).match("anything", None, 80) is True


def test_composite_str():
    s = str(CompositeFilter([DomainFilter(["example.com"], INC)], Operator.AND))
    assert "CompositeFilter" in s and "AND" in s
    assert s == "CompositeFilter(AND: [DomainFilter(include: [example.com])])"


def test_build_filter_empty():
    assert build_filter(None) is None
    assert build_filter(FilterConfig()) is None


def test_build_filter_single():
    f = build_filter(FilterConfig(include_domains=["example.com"]))
    assert isinstance(f, DomainFilter)
    assert f.match("example.com", None, 0) is True


def test_build_filter_multiple():
    f = build_filter(
        FilterConfig(
            include_domains=["example.com"],
            exclude_ips=["10.0.0.0/8"],
            include_ports=["443"],
        )
    )
    assert isinstance(f, CompositeFilter)
    assert f.match("example.com", "192.168.1.1", 443) is True
    assert f.match("example.com", "10.1.1.1", 443) is False


@pytest.mark.parametrize(
    "cfg",
    [
        FilterConfig(include_domains=["/[invalid/"]),
        FilterConfig(exclude_domains=["/[invalid/"]),
        FilterConfig(include_ips=["not-an-ip"]),
        FilterConfig(exclude_ips=["not-an-ip"]),
        FilterConfig(include_ports=["invalid"]),
        FilterConfig(exclude_ports=["invalid"]),
    ],
)
def test_build_filter_invalid(cfg):
    with pytest.raises(FilterError):
        build_filter(cfg)


@pytest.mark.parametrize(
    "domain,ip,port,want",
    [
        ("api.example.com", "192.168.2.1", 443, True),
        ("internal.example.com", "192.168.2.1", 443, False),
        ("api.example.com", "192.168.1.1", 443, False),
        ("api.example.com", "192.168.2.1", 8080, False),
    ],
)
def test_build_filter_all_types(domain, ip, port, want):
    f = build_filter(
        FilterConfig(
            include_domains=["*.example.com"],
            exclude_domains=["internal.example.com"],
            include_ips=["192.168.0.0/16"],
            exclude_ips=["192.168.1.1"],
            include_ports=["80", "443"],
            exclude_ports=["8080"],
        )
    )
    assert f.match(domain, ip, port) is want