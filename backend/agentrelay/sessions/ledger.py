"""Durable session records in Redis.

Layout:
  relay:session:{id}            hash  record fields (repository/options as JSON)
  relay:session:{id}:messages   list  conversation history, one JSON message per entry
  relay:sessions                set   every known session id (sweep index)

Writes to one record are serialized with WATCH/MULTI, so the worker and the
edge router's continuation path can both update a session without losing
each other's changes and ``current_turn`` can never move backwards.
"""

import json
from collections.abc import Callable, Collection
from datetime import UTC, datetime

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from agentrelay.sessions.schemas import (
    ConversationMessage,
    RepositoryBinding,
    SessionOptions,
    SessionRecord,
    SessionStatus,
    can_transition,
)

logger = structlog.get_logger(__name__)

INDEX_KEY = "relay:sessions"


def _record_key(session_id: str) -> str:
    return f"relay:session:{session_id}"


def _messages_key(session_id: str) -> str:
    return f"relay:session:{session_id}:messages"


def _ms(now: datetime | None) -> int:
    return int((now or datetime.now(UTC)).timestamp() * 1000)


class SessionLedger:
    """Owns SessionRecords across worker restarts."""

    def __init__(self, redis: Redis, idle_timeout: int = 30 * 60, completed_retention: int = 24 * 60 * 60):
        self.redis = redis
        self.idle_timeout = idle_timeout  # seconds since last activity before a record is reapable
        self.completed_retention = completed_retention

    async def create(
        self,
        session_id: str,
        status: SessionStatus = SessionStatus.STARTING,
        repository: RepositoryBinding | None = None,
        options: SessionOptions | None = None,
        now: datetime | None = None,
    ) -> SessionRecord:
        """Create a record, or refresh it if the id already exists.

        A refresh keeps createdAt, currentTurn and history and only moves
        status, bindings and lastActivityAt. Ended records are left alone.
        """
        ts = _ms(now)

        def apply(existing: dict) -> dict | None:
            if existing.get("ended") == "1":
                return None
            fields = {"id": session_id, "status": status.value, "last_activity_at": str(ts)}
            if not existing:
                fields.update(created_at=str(ts), current_turn="0")
            if repository is not None:
                fields["repository"] = repository.model_dump_json(by_alias=True)
            if options is not None:
                fields["options"] = options.model_dump_json(by_alias=True)
            return fields

        await self._mutate(session_id, apply, create=True)
        record = await self.get(session_id)
        logger.info("session_recorded", session_id=session_id, status=record.status.value)
        return record

    async def get(self, session_id: str) -> SessionRecord | None:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.hgetall(_record_key(session_id))
            pipe.lrange(_messages_key(session_id), 0, -1)
            raw, messages = await pipe.execute()

        if not raw:
            return None
        return _to_record(raw, messages)

    async def update(
        self,
        session_id: str,
        *,
        status: SessionStatus | None = None,
        current_turn: int | None = None,
        error_message: str | None = None,
        repository: RepositoryBinding | None = None,
        options: SessionOptions | None = None,
        now: datetime | None = None,
    ) -> SessionRecord | None:
        """Apply a partial update.

        currentTurn only ever increases; a lower value is dropped. An invalid
        status transition is dropped and logged. lastActivityAt is always
        refreshed. Updates to an ended session are ignored.

        Returns:
            The record after the update, or None if the session doesn't exist
        """
        ts = _ms(now)

        def apply(existing: dict) -> dict | None:
            if existing.get("ended") == "1":
                logger.info("session_update_ignored_after_end", session_id=session_id)
                return None

            fields = {"last_activity_at": str(ts)}
            if status is not None:
                current = SessionStatus(existing["status"])
                if can_transition(current, status):
                    fields["status"] = status.value
                else:
                    logger.warning(
                        "session_transition_rejected",
                        session_id=session_id,
                        current=current.value,
                        target=status.value,
                    )
            if current_turn is not None:
                fields["current_turn"] = str(max(int(existing.get("current_turn", 0)), current_turn))
            if error_message is not None:
                fields["error_message"] = error_message
            if repository is not None:
                fields["repository"] = repository.model_dump_json(by_alias=True)
            if options is not None:
                fields["options"] = options.model_dump_json(by_alias=True)
            return fields

        if not await self._mutate(session_id, apply):
            return None
        return await self.get(session_id)

    async def touch(self, session_id: str, now: datetime | None = None) -> bool:
        """Refresh lastActivityAt only. Returns False if the session doesn't exist."""
        ts = _ms(now)

        def apply(existing: dict) -> dict | None:
            if existing.get("ended") == "1":
                return None
            return {"last_activity_at": str(ts)}

        return await self._mutate(session_id, apply)

    async def append_message(self, session_id: str, message: ConversationMessage) -> bool:
        """Append to the session history. Returns False if the session is missing or ended."""
        key = _record_key(session_id)

        while True:
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    ended = await pipe.hget(key, "ended")
                    exists = await pipe.exists(key)
                    if not exists or ended == "1":
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.rpush(_messages_key(session_id), message.model_dump_json(by_alias=True))
                    pipe.hset(key, "last_activity_at", str(_ms(None)))
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def end(self, session_id: str, now: datetime | None = None) -> bool:
        """Mark a session ended: status completed plus completedAt.

        Idempotent. Returns False only when the session doesn't exist.
        """
        ts = _ms(now)

        def apply(existing: dict) -> dict | None:
            if existing.get("ended") == "1":
                return None
            return {
                "status": SessionStatus.COMPLETED.value,
                "completed_at": str(ts),
                "last_activity_at": str(ts),
                "ended": "1",
            }

        found = await self._mutate(session_id, apply)
        if found:
            logger.info("session_ended", session_id=session_id)
        return found

    async def delete(self, session_id: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(_record_key(session_id), _messages_key(session_id))
            pipe.srem(INDEX_KEY, session_id)
            await pipe.execute()

    async def sweep_idle(self, now: datetime | None = None, keep: Collection[str] = ()) -> list[str]:
        """Delete records whose lastActivityAt is older than the idle timeout.

        Keyed on lastActivityAt only; a long-lived but active session is kept.
        Ids in ``keep`` (sessions mid-turn) are never reaped.

        Returns: Ids of the reaped sessions.
        """
        cutoff = _ms(now) - self.idle_timeout * 1000
        reaped = []

        for session_id in await self.redis.smembers(INDEX_KEY):
            if session_id in keep:
                continue
            last_activity = await self.redis.hget(_record_key(session_id), "last_activity_at")
            if last_activity is None or int(last_activity) < cutoff:
                await self.delete(session_id)
                reaped.append(session_id)

        if reaped:
            logger.info("sessions_reaped_idle", count=len(reaped))
        return reaped

    async def cleanup_completed(self, now: datetime | None = None, keep: Collection[str] = ()) -> list[str]:
        """Delete ended sessions completed longer ago than the retention window."""
        cutoff = _ms(now) - self.completed_retention * 1000
        removed = []

        for session_id in await self.redis.smembers(INDEX_KEY):
            if session_id in keep:
                continue
            completed_at = await self.redis.hget(_record_key(session_id), "completed_at")
            if completed_at is not None and int(completed_at) < cutoff:
                await self.delete(session_id)
                removed.append(session_id)

        if removed:
            logger.info("sessions_cleaned_completed", count=len(removed))
        return removed

    async def _mutate(self, session_id: str, apply: Callable[[dict], dict | None], create: bool = False) -> bool:
        """Read-modify-write one record under WATCH, retrying on conflict.

        ``apply`` receives the current hash and returns the fields to write,
        or None to leave the record untouched.

        Returns:
            False if the record doesn't exist (and ``create`` is off)
        """
        key = _record_key(session_id)

        while True:
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    existing = await pipe.hgetall(key)
                    if not existing and not create:
                        await pipe.unwatch()
                        return False

                    fields = apply(existing)
                    if fields is None:
                        await pipe.unwatch()
                        return True

                    pipe.multi()
                    pipe.hset(key, mapping=fields)
                    pipe.sadd(INDEX_KEY, session_id)
                    await pipe.execute()
                    return True
                except WatchError:
                    logger.debug("session_write_conflict_retry", session_id=session_id)
                    continue


def _to_record(raw: dict, messages: list[str]) -> SessionRecord:
    repository = raw.get("repository")
    options = raw.get("options")
    completed_at = raw.get("completed_at")
    return SessionRecord(
        id=raw["id"],
        status=SessionStatus(raw["status"]),
        repository=RepositoryBinding.model_validate(json.loads(repository)) if repository else None,
        current_turn=int(raw.get("current_turn", 0)),
        messages=[ConversationMessage.model_validate_json(m) for m in messages],
        created_at=int(raw["created_at"]),
        last_activity_at=int(raw["last_activity_at"]),
        completed_at=int(completed_at) if completed_at else None,
        error_message=raw.get("error_message") or None,
        options=SessionOptions.model_validate(json.loads(options)) if options else None,
    )
