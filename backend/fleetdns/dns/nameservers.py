"""
Nameserver delegation check

Looks up a domain's live NS records and classifies them against the
nameservers the provider expects.
"""

from typing import Optional

import dns.asyncresolver
import dns.exception

from ..logger import logger
from .types import NSCheckResult, NSCheckStatus


def normalize_nameserver(hostname: str) -> str:
    return hostname.strip().rstrip(".").lower()


def classify_nameservers(expected: list[str], actual: list[str]) -> NSCheckStatus:
    """
    valid: every expected nameserver is delegated.
    pending: some are, propagation is still in progress.
    invalid: none are.
    """
    expected_set = {normalize_nameserver(ns) for ns in expected}
    actual_set = {normalize_nameserver(ns) for ns in actual}
    if not expected_set:
        return NSCheckStatus.INVALID

    matched = expected_set & actual_set
    if matched == expected_set:
        return NSCheckStatus.VALID
    if matched:
        return NSCheckStatus.PENDING
    return NSCheckStatus.INVALID


def build_resolver(
    nameservers: Optional[list[str]] = None, timeout: float = 10
) -> dns.asyncresolver.Resolver:
    if nameservers:
        resolver = dns.asyncresolver.Resolver(configure=False)
        resolver.nameservers = list(nameservers)
    else:
        resolver = dns.asyncresolver.Resolver()
    resolver.timeout = timeout
    resolver.lifetime = timeout
    return resolver


async def lookup_nameservers(
    domain: str, resolver: dns.asyncresolver.Resolver
) -> list[str]:
    answer = await resolver.resolve(domain, "NS")
    return sorted(normalize_nameserver(rdata.to_text()) for rdata in answer)


async def check_nameservers(
    domain: str,
    expected: list[str],
    resolver: Optional[dns.asyncresolver.Resolver] = None,
) -> NSCheckResult:
    """
    Check whether ``domain`` is delegated to the ``expected`` nameservers.

    A failed lookup is reported as ``invalid``; this never raises for DNS
    errors and never touches stored state.

    Args:
        domain: Zone apex to look up
        expected: Nameservers the provider assigned to the zone
        resolver: Resolver to use, defaults to the system configuration

    Returns:
        NSCheckResult with the classification and both nameserver lists
    """
    resolver = resolver or build_resolver()
    expected_list = sorted(normalize_nameserver(ns) for ns in expected)

    try:
        actual = await lookup_nameservers(domain, resolver)
    except dns.exception.DNSException as e:
        logger.info(f"NS lookup for {domain} failed: {type(e).__name__}: {e}")
        return NSCheckResult(
            domain=domain,
            status=NSCheckStatus.INVALID,
            expected=expected_list,
            actual=[],
            message=f"NS lookup failed: {e}",
        )

    status = classify_nameservers(expected_list, actual)
    return NSCheckResult(
        domain=domain, status=status, expected=expected_list, actual=actual
    )
