from __future__ import annotations

import json
import time
from dataclasses import dataclass, replace

from loguru import logger

from assistant_runs.finalization import RunFinalizer
from assistant_runs.providers.base import ConfigurationError, RemoteStatus, error_message
from assistant_runs.providers.registry import ProviderFactory
from assistant_runs.storage import JobRepository
from assistant_runs.storage.models import BackgroundJobRecord

INVALID_PAYLOAD = "Invalid background job payload."


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class BackgroundJobPayload:
    response_handle: str
    provider_id: str
    session_id: str
    run_id: str
    idempotency_key: str
    model: str
    status: str = "queued"
    updated_at: int = 0

    def to_dict(self) -> dict:
        return {
            "responseHandle": self.response_handle,
            "providerId": self.provider_id,
            "sessionId": self.session_id,
            "runId": self.run_id,
            "idempotencyKey": self.idempotency_key,
            "model": self.model,
            "status": self.status,
            "updatedAt": self.updated_at,
        }

    def touched(self, **changes) -> BackgroundJobPayload:
        return replace(self, updated_at=now_ms(), **changes)

    @classmethod
    def parse(cls, raw: object) -> BackgroundJobPayload | None:
        """None when a required string field is missing.

        ``responseId`` and ``clientRequestId`` are read as older spellings of
        ``responseHandle`` and ``idempotencyKey``.
        """
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError:
                return None
        if not isinstance(raw, dict):
            return None

        fields = {
            "response_handle": raw.get("responseHandle", raw.get("responseId")),
            "provider_id": raw.get("providerId"),
            "session_id": raw.get("sessionId"),
            "run_id": raw.get("runId"),
            "idempotency_key": raw.get("idempotencyKey", raw.get("clientRequestId")),
            "model": raw.get("model"),
        }
        if not all(isinstance(value, str) for value in fields.values()):
            return None

        status = raw.get("status")
        updated_at = raw.get("updatedAt")
        return cls(
            **fields,
            status=status if isinstance(status, str) else "queued",
            updated_at=int(updated_at) if isinstance(updated_at, (int, float)) and not isinstance(updated_at, bool)
            else now_ms(),
        )


def _salvage_run_id(raw_json: str) -> str | None:
    try:
        raw = json.loads(raw_json)
    except json.JSONDecodeError:
        return None
    run_id = raw.get("runId") if isinstance(raw, dict) else None
    return run_id if isinstance(run_id, str) and run_id else None


class BackgroundJobProcessor:
    """Advances one background job by at most one poll."""

    def __init__(
        self,
        jobs: JobRepository,
        factory: ProviderFactory,
        finalizer: RunFinalizer,
        *,
        max_attempts: int = 120,
    ):
        self._jobs = jobs
        self._factory = factory
        self._finalizer = finalizer
        self._max_attempts = max_attempts

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def _fail(self, job: BackgroundJobRecord, payload: BackgroundJobPayload, attempts: int, reason: str) -> None:
        self._finalizer.fail(payload.run_id, reason=reason)
        self._jobs.update_job(
            job.id,
            state="failed",
            attempt_count=attempts,
            last_error=reason,
            payload=payload.touched(status="failed").to_dict(),
        )
        logger.warning(f"Background job {job.id} failed: {reason}")

    def _retry_later(
        self, job: BackgroundJobRecord, payload: BackgroundJobPayload, attempts: int, message: str
    ) -> None:
        """Count a failed poll and leave the job running, unless that was the last allowed attempt."""
        if attempts >= self._max_attempts:
            self._fail(job, payload, attempts, f"Background job exceeded max attempts ({self._max_attempts}).")
            return
        self._jobs.update_job(
            job.id,
            state="running",
            attempt_count=attempts,
            last_error=message,
            payload=payload.touched().to_dict(),
        )
        logger.warning(f"Poll failed for background job {job.id} (attempt {attempts}): {message}")

    async def process(self, job: BackgroundJobRecord) -> None:
        payload = BackgroundJobPayload.parse(job.payload_json)
        if payload is None:
            run_id = _salvage_run_id(job.payload_json)
            if run_id is not None:
                self._finalizer.fail(run_id, reason=INVALID_PAYLOAD)
            self._jobs.update_job(
                job.id, state="failed", attempt_count=job.attempt_count + 1, last_error=INVALID_PAYLOAD
            )
            logger.warning(f"Background job {job.id} has an invalid payload")
            return

        if job.attempt_count >= self._max_attempts:
            self._fail(
                job,
                payload,
                job.attempt_count,
                f"Background job exceeded max attempts ({self._max_attempts}).",
            )
            return

        attempts = job.attempt_count + 1
        try:
            resolved = await self._factory.resolve(payload.provider_id, background=True)
        except ConfigurationError as ex:
            self._fail(job, payload, attempts, f"Background job has invalid provider configuration: {ex.message}")
            return
        except Exception as ex:
            self._retry_later(job, payload, attempts, error_message(ex, "Failed to resolve background provider."))
            return
        if resolved.adapter.poll_async is None:
            self._fail(job, payload, attempts, "Background job provider cannot poll for results.")
            return

        try:
            snapshot = await resolved.adapter.poll_async(payload.response_handle)
        except Exception as ex:
            self._retry_later(job, payload, attempts, error_message(ex, "Failed to poll background response."))
            return

        if not snapshot.status.is_terminal:
            if attempts >= self._max_attempts:
                self._fail(job, payload, attempts, f"Background job exceeded max attempts ({self._max_attempts}).")
                return
            self._jobs.update_job(
                job.id,
                state="running",
                attempt_count=attempts,
                last_error=None,
                payload=payload.touched(
                    status=snapshot.raw_status or payload.status,
                    model=snapshot.model or payload.model,
                ).to_dict(),
            )
            logger.debug(f"Background job {job.id} still {snapshot.status.value} (attempt {attempts})")
            return

        if snapshot.status is RemoteStatus.SUCCEEDED and snapshot.text.strip():
            self._finalizer.complete(
                payload.run_id,
                provider_id=payload.provider_id,
                text=snapshot.text,
                input_tokens=snapshot.input_tokens,
                output_tokens=snapshot.output_tokens,
            )
            self._jobs.update_job(
                job.id,
                state="completed",
                attempt_count=attempts,
                last_error=None,
                payload=payload.touched(status="completed", model=snapshot.model or payload.model).to_dict(),
            )
            logger.info(f"Background job {job.id} completed run {payload.run_id}")
            return

        reason = snapshot.error_text or (
            f'Background response ended with status "{snapshot.raw_status or snapshot.status.value}" without output.'
        )
        self._fail(job, payload, attempts, reason)
