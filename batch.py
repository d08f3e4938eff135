"""Best-effort bulk operations with per-item results."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from errors import ServiceTicketError

log = logging.getLogger("service_tickets.batch")


@dataclass
class ItemResult:
    item_id: str
    value: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchResult:
    results: list[ItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[ItemResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list[ItemResult]:
        return [r for r in self.results if not r.ok]

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    def summary(self) -> str:
        text = f"{self.success_count} of {len(self.results)} succeeded"
        if self.failed:
            text += f", {len(self.failed)} failed"
        return text


def _run_one(item_id: str, operation: Callable[[], Any]) -> ItemResult:
    try:
        return ItemResult(item_id, value=operation())
    except ServiceTicketError as e:
        log.warning("Batch item %s failed: %s", item_id, e)
        return ItemResult(item_id, error=str(e))
    except Exception as e:
        log.exception("Batch item %s failed unexpectedly", item_id)
        return ItemResult(item_id, error=str(e) or e.__class__.__name__)


def run_batch(
    items: Iterable[Any],
    operation: Callable[[Any], Any],
    key: Callable[[Any], str] = str,
    max_workers: int = 1,
    delay: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> BatchResult:
    """Apply ``operation`` to each item; one failure never stops the rest.

    With one worker items run in order with ``delay`` seconds between them.
    With more, they run on a bounded thread pool and results keep the input
    order. Nothing is rolled back.
    """
    items = list(items)
    result = BatchResult()
    if max_workers <= 1:
        for index, item in enumerate(items):
            if index and delay:
                sleep(delay)
            result.results.append(_run_one(key(item), lambda item=item: operation(item)))
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = [pool.submit(_run_one, key(item), lambda item=item: operation(item)) for item in items]
            result.results = [f.result() for f in futures]

    log.info("Batch finished: %s", result.summary())
    return result
