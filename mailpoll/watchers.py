"""Watcher aggregation for outbound correspondence.

Addresses are compared exactly as stored; no case folding is applied.
"""

from __future__ import annotations

from collections.abc import Iterable

from mailpoll_schema import WatcherSet


def aggregate_watchers(
    watchers: WatcherSet,
    *,
    recipients: Iterable[str] = (),
    exclude: Iterable[str] = (),
) -> list[str]:
    """Union of the three watcher levels, minus recipients and exclusions.

    Tenant-global and account-level watchers count when active; entity
    watchers count unless their ``notify`` flag is explicitly False.
    The result keeps first-seen order and holds no duplicates.
    """
    candidates = [w.email for w in watchers.tenant_global if w.is_active]
    candidates += [w.email for w in watchers.account_level if w.is_active]
    candidates += [w.email for w in watchers.entity_level if w.notify is not False]

    skip = set(recipients) | set(exclude)
    result: list[str] = []
    for address in candidates:
        if address and address not in skip:
            skip.add(address)
            result.append(address)
    return result


def merge_into_bcc(
    bcc: Iterable[str],
    cc: Iterable[str],
    watchers: Iterable[str],
    primary: str,
) -> list[str]:
    """Append *watchers* to *bcc*, leaving out anyone already addressed."""
    merged = list(bcc)
    skip = set(merged) | set(cc) | {primary}
    for address in watchers:
        if address and address not in skip:
            skip.add(address)
            merged.append(address)
    return merged
