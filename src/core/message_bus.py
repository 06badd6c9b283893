from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from .idempotency import IdempotencyStore, RedisIdempotencyStore, delivery_key
from .models import Outcome

from src.contracts.streams import dlq_stream


logger = logging.getLogger(__name__)

Handler = Callable[[dict], Optional[Outcome]]


class PublishError(RuntimeError):
    """Raised when the bus did not accept a message."""


@dataclass(frozen=True)
class PublishResult:
    channel: str
    message_id: str


@dataclass(frozen=True)
class ReceivedMessage:
    stream: str
    message_id: str
    body: str
    fields: dict[str, str]


ACK = "ack"
RETRY = "retry"
DEAD_LETTER = "dead_letter"


@dataclass(frozen=True)
class Disposition:
    action: str
    reason: Optional[str] = None
    outcome: Optional[Outcome] = None


def dispatch(body: str, handler: Handler) -> Disposition:
    """Run one delivery through a handler and decide what the worker does next.

    - unparseable body -> dead letter
    - handler exception or retryable outcome -> retry
    - dead-letter outcome (malformed, unconfirmed) -> dead letter
    - anything else (including duplicates) -> ack
    """

    try:
        wire = json.loads(body)
    except ValueError as e:
        return Disposition(DEAD_LETTER, f"unparseable: {e}")
    if not isinstance(wire, dict):
        return Disposition(DEAD_LETTER, "unparseable: message must be a JSON object")

    try:
        outcome = handler(wire)
    except Exception as e:
        logger.exception("handler_raised")
        return Disposition(RETRY, f"handler_raised: {e}")

    if outcome is None:
        return Disposition(ACK)
    if outcome.retryable:
        return Disposition(RETRY, outcome.value, outcome)
    if outcome.dead_letter:
        return Disposition(DEAD_LETTER, outcome.value, outcome)
    return Disposition(ACK, outcome=outcome)


class MessageBus:
    """Minimal pub/sub abstraction between the generator and the registry."""

    def publish(self, channel: str, message: Mapping[str, Any]) -> PublishResult:  # pragma: no cover
        raise NotImplementedError

    def subscribe(self, channel: str, group: str, handler: Handler) -> None:  # pragma: no cover
        raise NotImplementedError


class RedisStreamBus(MessageBus):
    """Redis Streams implementation.

    One stream per channel, one consumer group per logical consumer. Every entry
    carries the JSON message in the `event` field. Delivery is at-least-once:
    failed deliveries are acked and re-added to the stream after a backoff, and
    land in `dlq.<channel>` once `max_attempts` is reached.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        block_ms: int = 5000,
        read_count: int = 10,
        max_attempts: int = 5,
        dedupe_ttl_seconds: int = 7 * 24 * 3600,
        retry_backoff_seconds: float = 0.5,
        client=None,
    ):
        self.redis_url = redis_url
        self._client = client
        self.block_ms = block_ms
        self.read_count = read_count
        self.max_attempts = max_attempts
        self.dedupe_ttl_seconds = dedupe_ttl_seconds
        self.retry_backoff_seconds = retry_backoff_seconds
        self._subscriptions: list[tuple[str, str, Handler]] = []

    def _get_client(self):
        if self._client is None:
            import redis  # type: ignore

            self._client = redis.Redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    def _ensure_group(self, stream: str, group: str) -> None:
        client = self._get_client()
        try:
            client.xgroup_create(name=stream, groupname=group, id="0", mkstream=True)
        except Exception as e:
            # BUSYGROUP means it already exists.
            if "BUSYGROUP" not in str(e):
                raise

    def publish(self, channel: str, message: Mapping[str, Any]) -> PublishResult:
        body = json.dumps(dict(message), ensure_ascii=False)
        try:
            message_id = self._get_client().xadd(channel, {"event": body})
        except Exception as e:
            raise PublishError(f"xadd to {channel} failed: {e}") from e
        return PublishResult(channel=channel, message_id=str(message_id))

    def subscribe(self, channel: str, group: str, handler: Handler) -> None:
        self._subscriptions.append((channel, group, handler))

    def poll(self, *, stream: str, group: str, consumer: str) -> list[ReceivedMessage]:
        self._ensure_group(stream, group)
        client = self._get_client()
        resp = client.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream: ">"},
            count=self.read_count,
            block=self.block_ms,
        )
        out: list[ReceivedMessage] = []
        for (sname, items) in resp or []:
            for (msg_id, fields) in items:
                raw = dict(fields)
                out.append(ReceivedMessage(stream=sname, message_id=msg_id, body=raw.get("event") or "", fields=raw))
        return out

    def ack(self, *, stream: str, group: str, message_id: str) -> None:
        client = self._get_client()
        client.xack(stream, group, message_id)

    def _attempt_key(self, key: str) -> str:
        return f"attempt:{key}"

    def _dlq(self, *, base_stream: str, event_json: str, error: str, original_message_id: str) -> None:
        client = self._get_client()
        client.xadd(
            dlq_stream(base_stream),
            {
                "event": event_json,
                "error": error,
                "failed_at": datetime.now(timezone.utc).isoformat(),
                "original_stream": base_stream,
                "original_message_id": original_message_id,
            },
        )

    def run_worker(
        self,
        *,
        stream: str,
        group: str,
        consumer: str,
        handler: Handler,
        stop_after_messages: int | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Run an at-least-once worker with idempotency + retry + DLQ.

        - Identical bodies already handled by this group are skipped
        - Every message is acked; nothing is left pending on handler failure
        - Retryable failures are requeued up to max_attempts, then DLQ
        """

        client = self._get_client()
        idem: IdempotencyStore = RedisIdempotencyStore(client)
        processed = 0

        while stop_event is None or not stop_event.is_set():
            batch = self.poll(stream=stream, group=group, consumer=consumer)
            if not batch:
                continue

            for msg in batch:
                key = delivery_key(group=group, channel=stream, body=msg.body)
                if msg.body and idem.seen(key):
                    self.ack(stream=stream, group=group, message_id=msg.message_id)
                    continue

                disposition = dispatch(msg.body, handler)

                if disposition.action == RETRY:
                    attempt_key = self._attempt_key(key)
                    attempt = int(client.incr(attempt_key))
                    # Avoid unbounded growth of retry counters.
                    client.expire(attempt_key, self.dedupe_ttl_seconds)
                    self.ack(stream=stream, group=group, message_id=msg.message_id)
                    if attempt >= self.max_attempts:
                        self._dlq(
                            base_stream=stream,
                            event_json=msg.body,
                            error=f"failed_after_{attempt}: {disposition.reason}",
                            original_message_id=msg.message_id,
                        )
                    else:
                        time.sleep(self.retry_backoff_seconds)
                        client.xadd(stream, {"event": msg.body})
                elif disposition.action == DEAD_LETTER:
                    self._dlq(
                        base_stream=stream,
                        event_json=msg.body,
                        error=disposition.reason or "dead_letter",
                        original_message_id=msg.message_id,
                    )
                    self.ack(stream=stream, group=group, message_id=msg.message_id)
                else:
                    idem.mark(key, ttl_seconds=self.dedupe_ttl_seconds)
                    self.ack(stream=stream, group=group, message_id=msg.message_id)

                processed += 1
                if stop_after_messages is not None and processed >= stop_after_messages:
                    return

    def start_workers(self, *, consumer: str, stop_event: threading.Event) -> list[threading.Thread]:
        """Start one daemon thread per subscription."""
        threads = []
        for (channel, group, handler) in self._subscriptions:
            t = threading.Thread(
                target=self.run_worker,
                kwargs={
                    "stream": channel,
                    "group": group,
                    "consumer": consumer,
                    "handler": handler,
                    "stop_event": stop_event,
                },
                daemon=True,
                name=f"{group}-worker",
            )
            t.start()
            threads.append(t)
        return threads


@dataclass
class _Subscription:
    handler: Handler
    offset: int = 0
    retries: list[str] = field(default_factory=list)


class InMemoryMessageBus(MessageBus):
    """In-process bus for dev mode and tests.

    Messages are appended to a per-channel log; each consumer group keeps its own
    offset, so every group sees every message once. `rewind` replays a channel to
    a group, which is how tests simulate redelivery after a consumer restart.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        idempotency: IdempotencyStore | None = None,
        dedupe_ttl_seconds: int = 3600,
    ) -> None:
        self.max_attempts = max_attempts
        self._idem = idempotency
        self.dedupe_ttl_seconds = dedupe_ttl_seconds
        self._lock = threading.Lock()
        self._seq = 0
        self._log: dict[str, list[tuple[str, str]]] = defaultdict(list)
        self._subs: dict[tuple[str, str], _Subscription] = {}
        self._attempts: dict[str, int] = defaultdict(int)
        self._dead: dict[str, list[dict[str, str]]] = defaultdict(list)

    def publish(self, channel: str, message: Mapping[str, Any]) -> PublishResult:
        body = json.dumps(dict(message), ensure_ascii=False)
        return self.publish_raw(channel, body)

    def publish_raw(self, channel: str, body: str) -> PublishResult:
        with self._lock:
            self._seq += 1
            message_id = f"{self._seq}-0"
            self._log[channel].append((message_id, body))
        return PublishResult(channel=channel, message_id=message_id)

    def subscribe(self, channel: str, group: str, handler: Handler) -> None:
        with self._lock:
            self._subs[(channel, group)] = _Subscription(handler=handler)

    def published(self, channel: str) -> list[dict]:
        with self._lock:
            return [json.loads(body) for (_, body) in self._log[channel]]

    def dead_letters(self, channel: str) -> list[dict[str, str]]:
        with self._lock:
            return list(self._dead[channel])

    def rewind(self, channel: str, group: str, *, offset: int = 0) -> None:
        with self._lock:
            self._subs[(channel, group)].offset = offset

    def _next(self) -> Optional[tuple[str, str, str, _Subscription]]:
        with self._lock:
            for (channel, group), sub in self._subs.items():
                if sub.retries:
                    return channel, group, sub.retries.pop(0), sub
                log = self._log[channel]
                if sub.offset < len(log):
                    _, body = log[sub.offset]
                    sub.offset += 1
                    return channel, group, body, sub
        return None

    def deliver_pending(self, *, limit: int = 10_000) -> int:
        """Deliver everything pending (including messages published meanwhile)."""
        delivered = 0
        while delivered < limit:
            item = self._next()
            if item is None:
                break
            channel, group, body, sub = item
            idem_key = delivery_key(group=group, channel=channel, body=body)
            delivered += 1
            if self._idem is not None and self._idem.seen(idem_key):
                continue

            disposition = dispatch(body, sub.handler)

            if disposition.action == RETRY:
                with self._lock:
                    self._attempts[idem_key] += 1
                    attempt = self._attempts[idem_key]
                    if attempt >= self.max_attempts:
                        self._dead[dlq_stream(channel)].append(
                            {"event": body, "error": f"failed_after_{attempt}: {disposition.reason}"}
                        )
                    else:
                        sub.retries.append(body)
            elif disposition.action == DEAD_LETTER:
                with self._lock:
                    self._dead[dlq_stream(channel)].append({"event": body, "error": disposition.reason or "dead_letter"})
            elif self._idem is not None:
                self._idem.mark(idem_key, ttl_seconds=self.dedupe_ttl_seconds)
        return delivered


class EventPublisher:
    """Fire-and-forget publishing with an asynchronous completion signal.

    Success is logged with the broker message id; failure is logged and not
    retried. Retry policy belongs to the bus client configuration.
    """

    def __init__(self, bus: MessageBus, *, max_workers: int = 4) -> None:
        self._bus = bus
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="publisher")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def publish_async(self, channel: str, message: Mapping[str, Any], *, key: str | None = None) -> "Future[PublishResult]":
        fut = self._executor.submit(self._bus.publish, channel, message)
        with self._lock:
            self._pending.add(fut)

        def _done(f: Future) -> None:
            with self._lock:
                self._pending.discard(f)
            err = f.exception()
            if err is None:
                result = f.result()
                logger.info(f"Message sent: channel={result.channel}, message_id={result.message_id}, key={key}")
            else:
                logger.error("publish_failed", extra={"channel": channel, "key": key, "error": str(err)})

        fut.add_done_callback(_done)
        return fut

    def flush(self, timeout: float | None = None) -> None:
        """Wait for every publish submitted so far to complete."""
        with self._lock:
            pending = list(self._pending)
        # Failures are reported by the completion callback.
        wait(pending, timeout=timeout)

    def close(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
