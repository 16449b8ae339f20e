"""Delivery provider contract and the bundled sinks."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
import json
from pathlib import Path
import queue
import sys
import threading
from typing import Any, Protocol, TextIO

from .contracts import ReleaseEvent


class DeliveryError(RuntimeError):
    """Raised by providers when an event could not be delivered."""

    def __init__(self, provider_code: str, message: str = "") -> None:
        self.provider_code = provider_code
        self.message = message
        super().__init__(f"{provider_code}:{message}" if message else provider_code)


@dataclass(frozen=True)
class DeliveryReceipt:
    accepted: bool
    provider_code: str = "OK"
    provider_ref: str | None = None
    message: str = ""


class DeliveryProvider(Protocol):
    """Sink capability consumed by the scheduler.

    ``deliver`` may return ``None``, a ``DeliveryReceipt``, a ``Future`` or an
    awaitable resolving to either. Raising signals a failed delivery. The
    scheduler never calls it for ``delivered_units == 0`` and never retries.
    """

    def deliver(self, event: ReleaseEvent) -> Any:
        ...


class ConsoleDeliveryProvider:
    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream

    def deliver(self, event: ReleaseEvent) -> DeliveryReceipt:
        stream = self.stream or sys.stdout
        stream.write(json.dumps(event.as_dict(), sort_keys=True, ensure_ascii=True) + "\n")
        stream.flush()
        return DeliveryReceipt(accepted=True, provider_code="CONSOLE")


class JsonlDeliveryProvider:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def deliver(self, event: ReleaseEvent) -> DeliveryReceipt:
        record = {
            "delivered_at_utc": _utc_now(),
            "event": event.as_dict(),
        }
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True, ensure_ascii=True) + "\n")
        return DeliveryReceipt(accepted=True, provider_code="JSONL", provider_ref=str(self.path))


class QueueDeliveryProvider:
    def __init__(self, sink: queue.Queue | None = None, *, maxsize: int = 0) -> None:
        self.queue: queue.Queue = sink if sink is not None else queue.Queue(maxsize=maxsize)

    def deliver(self, event: ReleaseEvent) -> DeliveryReceipt:
        try:
            self.queue.put_nowait(event)
        except queue.Full as exc:
            raise DeliveryError("QUEUE_FULL", f"queue at capacity ({self.queue.maxsize})") from exc
        return DeliveryReceipt(accepted=True, provider_code="QUEUED")

    def drain(self) -> list[ReleaseEvent]:
        drained: list[ReleaseEvent] = []
        while True:
            try:
                drained.append(self.queue.get_nowait())
            except queue.Empty:
                return drained


class ThreadPoolDeliveryProvider:
    """Runs an inner provider on worker threads and hands back futures."""

    def __init__(self, inner: DeliveryProvider, *, max_workers: int = 4) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        self.inner = inner
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="release-delivery")

    def deliver(self, event: ReleaseEvent) -> Future:
        return self._executor.submit(self.inner.deliver, event)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "ThreadPoolDeliveryProvider":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class RecordingDeliveryProvider:
    """Test double: records delivered events, optionally failing chosen calls.

    ``fail_on`` holds 1-based call numbers that raise ``DeliveryError``.
    ``reject_on`` holds call numbers answered with a non-accepted receipt.
    """

    def __init__(
        self,
        *,
        fail_on: set[int] | None = None,
        reject_on: set[int] | None = None,
        fail_code: str = "SIMULATED_FAILURE",
    ) -> None:
        self.fail_on = set(fail_on or ())
        self.reject_on = set(reject_on or ())
        self.fail_code = fail_code
        self.calls: list[ReleaseEvent] = []
        self.delivered: list[ReleaseEvent] = []

    def deliver(self, event: ReleaseEvent) -> DeliveryReceipt:
        self.calls.append(event)
        call_number = len(self.calls)
        if call_number in self.fail_on:
            raise DeliveryError(self.fail_code, f"call {call_number}")
        if call_number in self.reject_on:
            return DeliveryReceipt(accepted=False, provider_code=self.fail_code, message=f"call {call_number}")
        self.delivered.append(event)
        return DeliveryReceipt(accepted=True, provider_code="RECORDED", provider_ref=str(call_number))

    @property
    def delivered_units(self) -> list[int]:
        return [event.delivered_units for event in self.delivered]


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
