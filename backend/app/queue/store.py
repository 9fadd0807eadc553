"""Redis-backed job store with Lua script atomicity.

Every state transition (enqueue, claim, complete, fail, defer) is a single Lua
script executed inside Redis, so concurrent workers never double-claim a job
and a worker whose lease expired cannot overwrite a job that was reclaimed.

Key layout for queue ``q`` under prefix ``p``::

    p:queue:q:job:<id>   hash   job fields
    p:queue:q:waiting    zset   eligible jobs, score = priority band + sequence
    p:queue:q:delayed    zset   jobs waiting for run_at (ms)
    p:queue:q:active     zset   claimed jobs, score = lease expiry (ms)
    p:queue:q:completed  zset   finished jobs, score = finished_at (ms), trimmed
    p:queue:q:dead       zset   dead-lettered jobs, score = finished_at (ms)
    p:queue:q:dedup      hash   dedup key -> id of a waiting/delayed job
    p:queue:q:claims     zset   lease tokens claimed within the rate window, score = claimed at (ms)
    p:queue:q:seq        string enqueue sequence counter

Usage:
    ```python
    from redis import Redis
    from app.queue.store import JobStore

    store = JobStore(Redis.from_url(url, decode_responses=True), queues)
    job_id = store.enqueue("transaction-sync", JobType.SYNC, {...}, priority=10)
    job = store.claim("transaction-sync", worker_id="worker-1")
    store.complete(job, result)
    ```
"""

import json
import time
import uuid
from typing import Any, Callable

from redis import Redis
from redis.exceptions import RedisError

from app.logging_config import get_logger
from app.queue.jobs import MAX_PRIORITY, MIN_PRIORITY, Job, JobState, JobType
from app.queue.policy import QueueConfig


logger = get_logger("queue.store")

# Priority bands are wider than any realistic sequence number, so ordering
# is by priority first and enqueue order second.
SCORE_PRIORITY_STRIDE = 10**12

# KEYS[1]: job hash, KEYS[2]: waiting, KEYS[3]: delayed, KEYS[4]: dedup
# ARGV[1]: job id, ARGV[2]: dedup key or "", ARGV[3]: run_at ms, ARGV[4]: now ms,
# ARGV[5]: waiting score, ARGV[6]: priority, ARGV[7]: job key prefix,
# ARGV[8..]: field/value pairs
# Returns: {job_id, created (1) or coalesced (0)}
ENQUEUE_LUA = """
local unpack = table.unpack or unpack
local job_id = ARGV[1]
local dedup_key = ARGV[2]

if dedup_key ~= "" then
    local existing = redis.call("HGET", KEYS[4], dedup_key)
    if existing then
        local existing_key = ARGV[7] .. existing
        local existing_score = tonumber(redis.call("HGET", existing_key, "score"))
        if existing_score then
            if tonumber(ARGV[5]) < existing_score then
                redis.call("HSET", existing_key, "score", ARGV[5], "priority", ARGV[6])
                if redis.call("ZSCORE", KEYS[2], existing) then
                    redis.call("ZADD", KEYS[2], ARGV[5], existing)
                end
            end
            return {existing, 0}
        end
        redis.call("HDEL", KEYS[4], dedup_key)
    end
end

redis.call("HSET", KEYS[1], unpack(ARGV, 8))
if tonumber(ARGV[3]) > tonumber(ARGV[4]) then
    redis.call("HSET", KEYS[1], "state", "delayed")
    redis.call("ZADD", KEYS[3], ARGV[3], job_id)
else
    redis.call("HSET", KEYS[1], "state", "waiting")
    redis.call("ZADD", KEYS[2], ARGV[5], job_id)
end
if dedup_key ~= "" then
    redis.call("HSET", KEYS[4], dedup_key, job_id)
end
return {job_id, 1}
"""

# KEYS[1]: waiting, KEYS[2]: delayed, KEYS[3]: active, KEYS[4]: dedup,
# KEYS[5]: claim timestamps within the rate window
# ARGV[1]: now ms, ARGV[2]: lease_until ms, ARGV[3]: worker id,
# ARGV[4]: lease token, ARGV[5]: job key prefix,
# ARGV[6]: max claims per window (0 = unlimited), ARGV[7]: window ms
# Returns: claimed job id, or nil when nothing is eligible or the window is full
CLAIM_LUA = """
local due = redis.call("ZRANGEBYSCORE", KEYS[2], "-inf", ARGV[1], "LIMIT", 0, 100)
for _, id in ipairs(due) do
    local key = ARGV[5] .. id
    redis.call("ZREM", KEYS[2], id)
    redis.call("ZADD", KEYS[1], redis.call("HGET", key, "score"), id)
    redis.call("HSET", key, "state", "waiting")
end

local limit = tonumber(ARGV[6])
if limit > 0 then
    redis.call("ZREMRANGEBYSCORE", KEYS[5], "-inf", tonumber(ARGV[1]) - tonumber(ARGV[7]))
    if redis.call("ZCARD", KEYS[5]) >= limit then
        return false
    end
end

local head = redis.call("ZRANGE", KEYS[1], 0, 0)
if #head == 0 then
    return false
end

local id = head[1]
local key = ARGV[5] .. id
redis.call("ZREM", KEYS[1], id)
redis.call("ZADD", KEYS[3], ARGV[2], id)
redis.call("HINCRBY", key, "attempts", 1)
redis.call("HSET", key,
    "state", "active",
    "worker_id", ARGV[3],
    "lease_token", ARGV[4],
    "lease_until", ARGV[2],
    "started_at", ARGV[1])

local dedup_key = redis.call("HGET", key, "dedup_key")
if dedup_key and dedup_key ~= "" and redis.call("HGET", KEYS[4], dedup_key) == id then
    redis.call("HDEL", KEYS[4], dedup_key)
end

if limit > 0 then
    redis.call("ZADD", KEYS[5], ARGV[1], ARGV[4])
    redis.call("PEXPIRE", KEYS[5], ARGV[7])
end
return id
"""

# Moves an active job to a target set, guarded by its lease token.
# KEYS[1]: job hash, KEYS[2]: active, KEYS[3]: target zset
# ARGV[1]: job id, ARGV[2]: lease token, ARGV[3]: target state,
# ARGV[4]: target score, ARGV[5]: only if lease expired before this ms (or ""),
# ARGV[6]: attempts delta, ARGV[7..]: field/value pairs
# Returns: 1 on success, 0 if the caller no longer owns the job
TRANSITION_LUA = """
local unpack = table.unpack or unpack
if redis.call("HGET", KEYS[1], "state") ~= "active" then
    return 0
end
if redis.call("HGET", KEYS[1], "lease_token") ~= ARGV[2] then
    return 0
end
if ARGV[5] ~= "" then
    local lease_until = tonumber(redis.call("HGET", KEYS[1], "lease_until"))
    if lease_until and lease_until > tonumber(ARGV[5]) then
        return 0
    end
end

redis.call("ZREM", KEYS[2], ARGV[1])
redis.call("ZADD", KEYS[3], ARGV[4], ARGV[1])
if tonumber(ARGV[6]) ~= 0 then
    redis.call("HINCRBY", KEYS[1], "attempts", ARGV[6])
end
redis.call("HSET", KEYS[1], "state", ARGV[3], "lease_token", "", unpack(ARGV, 7))
return 1
"""


class JobStore:
    """Durable prioritized job queues on Redis.

    Attributes:
        queues: Queue configurations keyed by queue name.
    """

    def __init__(
        self,
        redis_client: Redis,
        queues: dict[str, QueueConfig],
        prefix: str = "budgetplanner",
        completed_retention: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the store.

        Args:
            redis_client: Redis client created with ``decode_responses=True``.
            queues: Queue configurations keyed by name. Only these queues accept jobs.
            prefix: Key prefix shared by every queue.
            completed_retention: Completed jobs kept per queue for observability.
            clock: Returns the current time in seconds; injectable for tests.
        """
        self._redis = redis_client
        self.queues = queues
        self._prefix = prefix
        self._completed_retention = completed_retention
        self._clock = clock

        self._enqueue_script = redis_client.register_script(ENQUEUE_LUA)
        self._claim_script = redis_client.register_script(CLAIM_LUA)
        self._transition_script = redis_client.register_script(TRANSITION_LUA)

    # --- Keys ---

    def _config(self, queue: str) -> QueueConfig:
        try:
            return self.queues[queue]
        except KeyError:
            raise ValueError(f"Unknown queue: {queue}") from None

    def _key(self, queue: str, name: str) -> str:
        return f"{self._prefix}:queue:{queue}:{name}"

    def _job_prefix(self, queue: str) -> str:
        return self._key(queue, "job:")

    def _job_key(self, queue: str, job_id: str) -> str:
        return self._job_prefix(queue) + job_id

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # --- Producer side ---

    def enqueue(
        self,
        queue: str,
        job_type: JobType,
        payload: dict[str, Any],
        priority: int = 0,
        delay: float = 0,
        dedup_key: str | None = None,
        connection_id: str | None = None,
    ) -> str:
        """Add a job to a queue.

        A non-empty dedup key coalesces with a job that is still waiting or
        delayed under the same key; that job's id is returned instead, promoted
        to the new priority when the new one is higher.

        Returns:
            The id of the created or coalesced job.
        """
        job_id, _ = self.submit(
            queue,
            job_type,
            payload,
            priority=priority,
            delay=delay,
            dedup_key=dedup_key,
            connection_id=connection_id,
        )
        return job_id

    def submit(
        self,
        queue: str,
        job_type: JobType,
        payload: dict[str, Any],
        priority: int = 0,
        delay: float = 0,
        dedup_key: str | None = None,
        connection_id: str | None = None,
    ) -> tuple[str, bool]:
        """Like enqueue, also reporting whether a new job was created (False when coalesced)."""
        config = self._config(queue)
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValueError(
                f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}"
            )

        now = self._now_ms()
        run_at = now + int(max(delay, 0) * 1000)
        job_id = uuid.uuid4().hex
        sequence = self._redis.incr(self._key(queue, "seq"))
        score = (MAX_PRIORITY - priority) * SCORE_PRIORITY_STRIDE + sequence

        fields = {
            "id": job_id,
            "queue": queue,
            "type": JobType(job_type).value,
            "payload": json.dumps(payload, default=str),
            "priority": priority,
            "score": score,
            "attempts": 0,
            "max_attempts": config.retry.max_attempts,
            "connection_id": connection_id or "",
            "dedup_key": dedup_key or "",
            "created_at": now,
            "run_at": run_at,
        }
        args = [job_id, dedup_key or "", run_at, now, score, priority, self._job_prefix(queue)]
        for name, value in fields.items():
            args.extend([name, value])

        result_id, created = self._enqueue_script(
            keys=[
                self._job_key(queue, job_id),
                self._key(queue, "waiting"),
                self._key(queue, "delayed"),
                self._key(queue, "dedup"),
            ],
            args=args,
        )

        if int(created):
            logger.info(
                f"Enqueued {job_type} job {result_id} on {queue} "
                f"(priority={priority}, delay={delay}s, connection={connection_id})"
            )
        else:
            logger.info(f"Coalesced {job_type} request into pending job {result_id} on {queue}")
        return result_id, bool(int(created))

    # --- Consumer side ---

    def claim(self, queue: str, worker_id: str) -> Job | None:
        """Atomically take the next eligible job and lease it to a worker.

        Returns None when nothing is eligible or when the queue already
        handed out its rate limit of claims within the current window.
        """
        config = self._config(queue)
        now = self._now_ms()
        lease_until = now + int(config.lease_seconds * 1000)

        job_id = self._claim_script(
            keys=[
                self._key(queue, "waiting"),
                self._key(queue, "delayed"),
                self._key(queue, "active"),
                self._key(queue, "dedup"),
                self._key(queue, "claims"),
            ],
            args=[
                now,
                lease_until,
                worker_id,
                uuid.uuid4().hex,
                self._job_prefix(queue),
                config.rate_limit_max,
                int(config.rate_limit_window_seconds * 1000),
            ],
        )
        if job_id is None:
            return None
        return self.get_job(queue, job_id)

    def complete(self, job: Job, result: Any = None) -> bool:
        """Mark a claimed job as completed.

        Returns:
            False when the caller's lease was lost and the job was left untouched.
        """
        now = self._now_ms()
        ok = self._transition(
            job,
            JobState.COMPLETED,
            score=now,
            fields={"finished_at": now, "result": json.dumps(result, default=str)},
        )
        if not ok:
            logger.warning(f"Job {job.id} on {job.queue}: lease lost before completion")
            return False
        self._trim_completed(job.queue)
        return True

    def fail(self, job: Job, reason: str, permanent: bool = False) -> JobState | None:
        """Record a failed attempt; reschedule with backoff or dead-letter.

        Returns:
            JobState.DELAYED or JobState.DEAD, or None if the lease was lost.
        """
        return self._fail(job, reason, permanent=permanent)

    def defer(self, job: Job, delay: float) -> bool:
        """Put a claimed job back without consuming an attempt."""
        run_at = self._now_ms() + int(delay * 1000)
        ok = self._transition(
            job,
            JobState.DELAYED,
            score=run_at,
            fields={"run_at": run_at},
            attempts_delta=-1,
        )
        if ok:
            logger.info(f"Deferred job {job.id} on {job.queue} for {delay}s")
        else:
            logger.warning(f"Job {job.id} on {job.queue}: lease lost before defer")
        return ok

    def recover_expired(self, queue: str) -> list[str]:
        """Fail every active job whose lease has expired.

        Counts as an attempt, so abandoned jobs follow the same backoff and
        dead-letter rules as handler failures.
        """
        now = self._now_ms()
        expired = self._redis.zrangebyscore(self._key(queue, "active"), "-inf", now)
        recovered = []
        for job_id in expired:
            job = self.get_job(queue, job_id)
            if job is None:
                self._redis.zrem(self._key(queue, "active"), job_id)
                continue
            state = self._fail(job, "lease expired", require_expired_at=now)
            if state is not None:
                logger.warning(
                    f"Reclaimed job {job_id} on {queue} from worker {job.worker_id} "
                    f"after lease expiry -> {state.value}"
                )
                recovered.append(job_id)
        return recovered

    # --- Reads ---

    def get_job(self, queue: str, job_id: str) -> Job | None:
        data = self._redis.hgetall(self._job_key(queue, job_id))
        if not data:
            return None
        payload = json.loads(data.get("payload") or "{}")
        result = json.loads(data["result"]) if data.get("result") else None
        return Job.from_redis(data, payload, result)

    def list_jobs(self, queue: str, state: JobState, limit: int = 50) -> list[Job]:
        """Jobs in one state; finished states are listed newest first."""
        key = self._state_key(queue, state)
        if state in (JobState.COMPLETED, JobState.DEAD):
            job_ids = self._redis.zrevrange(key, 0, limit - 1)
        else:
            job_ids = self._redis.zrange(key, 0, limit - 1)
        jobs = [self.get_job(queue, job_id) for job_id in job_ids]
        return [job for job in jobs if job is not None]

    def stats(self, queue: str) -> dict[str, Any]:
        """Job counts per state for one queue."""
        self._config(queue)
        pipe = self._redis.pipeline(transaction=False)
        for state in (
            JobState.WAITING,
            JobState.ACTIVE,
            JobState.COMPLETED,
            JobState.DEAD,
            JobState.DELAYED,
        ):
            pipe.zcard(self._state_key(queue, state))
        waiting, active, completed, failed, delayed = pipe.execute()
        return {
            "name": queue,
            "waiting": waiting,
            "active": active,
            "completed": completed,
            "failed": failed,
            "delayed": delayed,
            "total": waiting + active + completed + failed + delayed,
        }

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    def close(self) -> None:
        self._redis.close()

    # --- Internals ---

    def _state_key(self, queue: str, state: JobState) -> str:
        names = {
            JobState.WAITING: "waiting",
            JobState.DELAYED: "delayed",
            JobState.ACTIVE: "active",
            JobState.COMPLETED: "completed",
            JobState.DEAD: "dead",
        }
        return self._key(queue, names[state])

    def _fail(
        self,
        job: Job,
        reason: str,
        permanent: bool = False,
        require_expired_at: int | None = None,
    ) -> JobState | None:
        retry = self._config(job.queue).retry
        now = self._now_ms()

        if not permanent and retry.should_retry(job.attempts):
            delay = retry.delay_for(job.attempts)
            run_at = now + int(delay * 1000)
            ok = self._transition(
                job,
                JobState.DELAYED,
                score=run_at,
                fields={"run_at": run_at, "last_error": reason},
                require_expired_at=require_expired_at,
            )
            state = JobState.DELAYED
            if ok:
                logger.warning(
                    f"Job {job.id} on {job.queue} failed attempt "
                    f"{job.attempts}/{job.max_attempts}: {reason}; retrying in {delay}s"
                )
        else:
            ok = self._transition(
                job,
                JobState.DEAD,
                score=now,
                fields={"finished_at": now, "last_error": reason},
                require_expired_at=require_expired_at,
            )
            state = JobState.DEAD
            if ok:
                logger.error(
                    f"Job {job.id} on {job.queue} dead-lettered after "
                    f"{job.attempts} attempt(s): {reason}"
                )

        if not ok:
            if require_expired_at is None:
                logger.warning(f"Job {job.id} on {job.queue}: lease lost before failure was recorded")
            return None
        return state

    def _transition(
        self,
        job: Job,
        state: JobState,
        score: int,
        fields: dict[str, Any],
        attempts_delta: int = 0,
        require_expired_at: int | None = None,
    ) -> bool:
        args = [
            job.id,
            job.lease_token or "",
            state.value,
            score,
            "" if require_expired_at is None else require_expired_at,
            attempts_delta,
        ]
        for name, value in fields.items():
            args.extend([name, value])

        result = self._transition_script(
            keys=[
                self._job_key(job.queue, job.id),
                self._key(job.queue, "active"),
                self._state_key(job.queue, state),
            ],
            args=args,
        )
        return bool(int(result))

    def _trim_completed(self, queue: str) -> None:
        key = self._key(queue, "completed")
        excess = self._redis.zrange(key, 0, -(self._completed_retention + 1))
        if not excess:
            return
        pipe = self._redis.pipeline(transaction=True)
        pipe.zrem(key, *excess)
        pipe.delete(*[self._job_key(queue, job_id) for job_id in excess])
        pipe.execute()
