from __future__ import annotations

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Sequence

from .errors import DecodeError
from .proto import StreamElement, api_url, split_stream_id, validate
from .transport import Transport

"""
Multi-host stream queries
-------------------------
A query over ``key@host`` stream references is split into one request per
host, the requests run concurrently, and the answers are merged into a single
newest-first list:

  1) plan_hosts: host -> [stream keys], default host for bare keys
  2) one GET per host; hosts are visited in sorted order so the concatenation
     (and therefore tie-breaking) is reproducible
  3) stable sort on the element timestamp, descending
  4) first occurrence of each id wins
  5) at most MAX_ELEMENTS survive

A failing host fails the whole query and cancels the requests still running
against the other hosts. An empty host key only logs a warning.
"""

log = logging.getLogger("ccsdk.fanout")

MAX_ELEMENTS = 16


def plan_hosts(streams: Iterable[str], default_host: str) -> Dict[str, List[str]]:
    plan: Dict[str, List[str]] = {}
    for ref in streams:
        key, host = split_stream_id(ref, default_host)
        plan.setdefault(host, []).append(key)
    return plan


def timestamp_key(timestamp: str) -> Decimal:
    """``"<major>-<minor>"`` read as the decimal number ``major.minor``."""

    major, sep, minor = str(timestamp).partition("-")
    text = f"{major}.{minor}" if sep and minor else major
    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise DecodeError(f"invalid stream timestamp {timestamp!r}") from exc


def merge_elements(elements: Iterable[StreamElement], limit: int = MAX_ELEMENTS) -> List[StreamElement]:
    ordered = sorted(elements, key=lambda e: timestamp_key(e.timestamp), reverse=True)
    seen: set[str] = set()
    result: List[StreamElement] = []
    for element in ordered:
        if element.id in seen:
            continue
        seen.add(element.id)
        result.append(element)
        if len(result) >= limit:
            break
    return result


class FanoutQuery:
    def __init__(self, transport: Transport, default_host: str, *, scheme: str = "https") -> None:
        self.transport = transport
        self.default_host = default_host
        self.scheme = scheme

    async def _query_host(self, host: str, path: str, keys: Sequence[str], extra: Dict[str, str]) -> List[StreamElement]:
        params = {"streams": ",".join(keys), **extra}
        url = api_url(host, path, scheme=self.scheme)
        res = (await self.transport.fetch("GET", url, params=params)).raise_for_status()
        data = res.json()
        if data is None:
            return []
        if not isinstance(data, list):
            raise DecodeError(f"{url} returned {type(data).__name__}, expected a list")
        return [validate(StreamElement, item) for item in data]

    async def run(self, path: str, streams: Iterable[str], extra: Optional[Dict[str, str]] = None) -> List[StreamElement]:
        plan = plan_hosts(streams, self.default_host)
        extra = {k: v for k, v in (extra or {}).items() if v}
        hosts = []
        for host in sorted(plan):
            if not host:
                log.warning("skipping streams %s with no host", plan[host])
                continue
            hosts.append(host)
        tasks = [asyncio.ensure_future(self._query_host(h, path, plan[h], extra)) for h in hosts]
        try:
            batches = await asyncio.gather(*tasks)
        except BaseException:
            # no sibling request may outlive a failed query
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        elements = [element for batch in batches for element in batch]
        return merge_elements(elements)

    async def recent(self, streams: Iterable[str]) -> List[StreamElement]:
        return await self.run("/stream/recent", streams)

    async def ranged(
        self,
        streams: Iterable[str],
        until: Optional[str] = None,
        since: Optional[str] = None,
    ) -> List[StreamElement]:
        return await self.run("/stream/range", streams, {"since": since, "until": until})


__all__ = ["FanoutQuery", "plan_hosts", "merge_elements", "timestamp_key", "MAX_ELEMENTS"]
