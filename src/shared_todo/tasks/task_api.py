# src/shared_todo/tasks/task_api.py

from __future__ import annotations

"""
Async pumps between the engine and its collaborators.

- write dispatcher: drains the engine outbox into the store and feeds the
  responses back as acknowledgements,
- change-feed consumer: pushes remote events into the engine inbox and
  drains it.

Both loops run on the same event loop as the engine. To stop them, cancel
the coroutine/task.
"""

import asyncio
import logging
from collections.abc import Callable

from ..core.ports import ChangeFeed, StoreWriter
from .errors import NotFound, SyncError, TransportError, ValidationError
from .sync_engine import FailedWrite, SyncEngine, WriteIntent, WriteOp

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[int], None]


async def dispatch_write(engine: SyncEngine, writer: StoreWriter, intent: WriteIntent) -> None:
    """
    Send one write intent and reconcile the answer.

    NotFound (the record is gone on the store side) is logged and dropped.
    Any other failure is recorded on the engine and re-raised as TransportError;
    the optimistic local state stays in place either way.
    """
    try:
        if intent.op is WriteOp.INSERT:
            record = await writer.insert(intent.entity_kind, dict(intent.fields))
        elif intent.op is WriteOp.UPDATE:
            record = await writer.update(intent.entity_kind, intent.record_id, dict(intent.fields))
        else:
            await writer.delete(intent.entity_kind, intent.record_id)
            record = None
    except NotFound:
        logger.info(
            "Store has no %s %s; %s dropped",
            intent.entity_kind,
            intent.record_id,
            intent.op.value,
        )
        return
    except SyncError as e:
        engine.on_write_failed(intent, e)
        if isinstance(e, TransportError):
            raise
        raise TransportError(str(e)) from e
    except Exception as e:
        logger.exception("Store writer crashed op=%s id=%s", intent.op.value, intent.record_id)
        engine.on_write_failed(intent, e)
        raise TransportError(str(e)) from e

    try:
        engine.on_intent_acknowledged(intent, record)
    except ValidationError as e:
        logger.warning("Unusable ack for %s %s: %s", intent.entity_kind, intent.record_id, e)


async def flush_writes(engine: SyncEngine, writer: StoreWriter) -> list[FailedWrite]:
    """Dispatch everything queued so far, in order. Returns the failures."""
    failures: list[FailedWrite] = []
    for intent in engine.take_write_intents():
        try:
            await dispatch_write(engine, writer, intent)
        except TransportError:
            failures.append(engine.failed_writes[-1])
    return failures


async def run_write_dispatcher(
        engine: SyncEngine,
        writer: StoreWriter,
        *,
        interval_seconds: float = 0.2,
        on_failure: Callable[[FailedWrite], None] | None = None,
) -> None:
    """
    Flush the outbox every interval_seconds.

    Failures are not retried here; they stay in engine.failed_writes until
    the caller retries or discards them.
    """
    sleep_s = max(0.01, float(interval_seconds))

    while True:
        if engine.has_pending_writes:
            try:
                failures = await flush_writes(engine, writer)
            except Exception:
                logger.exception("flush_writes failed")
                failures = []

            for failed in failures:
                if on_failure is None:
                    continue
                try:
                    on_failure(failed)
                except Exception:
                    logger.exception("on_failure callback failed id=%s", failed.intent.record_id)

        await asyncio.sleep(sleep_s)


async def run_change_feed(
        engine: SyncEngine,
        feed: ChangeFeed,
        entity_kind: str = "tasks",
        *,
        on_change: ChangeCallback | None = None,
        retry_delay_seconds: float = 5.0,
) -> None:
    """
    Consume a change feed forever.

    Each event goes through the engine inbox so ordering is decided by the
    updated_at merge rule, not by arrival. If the subscription breaks it is
    re-opened after retry_delay_seconds.
    """
    retry_s = max(0.01, float(retry_delay_seconds))

    while True:
        try:
            async for event in feed.subscribe(entity_kind):
                engine.post_remote_event(event)
                applied = engine.drain_inbox()
                if applied and on_change is not None:
                    try:
                        on_change(applied)
                    except Exception:
                        logger.exception("on_change callback failed")
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Change feed for %s broke; resubscribing in %.1fs", entity_kind, retry_s)

        await asyncio.sleep(retry_s)
