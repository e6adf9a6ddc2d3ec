from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from loguru import logger
from pydantic import BaseModel

from ..database import settings
from ..models.blood_request import BloodRequest, DonorResponseStatus, LockState, MatchedDonor, RequestStatus
from ..schemas.blood_request import lock_document
from ..stores.base import Notifier
from ..stores.request_repository import RequestRepository
from ..utils.clock import utcnow
from ..utils.errors import InputValidationError, InvalidStateError, LockConflictError, lock_conflict_message
from ..utils.notifications import REQUEST_MATCHED, SYSTEM, deliver


class LockResult(BaseModel):
    acquired: bool
    locked_by: Optional[str] = None
    lock_expires_at: Optional[datetime] = None
    retry_after_minutes: int = 0
    message: str = ""


def _conflict(lock: LockState, now: datetime) -> LockResult:
    if not lock.is_held(now):
        lock = lock.release()
    retry_after = max(1, lock.minutes_remaining(now))
    return LockResult(
        acquired=False,
        locked_by=lock.locked_by,
        lock_expires_at=lock.lock_expires_at,
        retry_after_minutes=retry_after,
        message=lock_conflict_message(lock.locked_by, retry_after),
    )


class RequestLockManager:
    """
    Applies ``LockState`` transitions to stored requests.

    Every write is a compare-and-swap on the request ``version``. A lost race re-reads
    the request and re-evaluates, so two donors can never both see the request
    unlocked and both win it.
    """

    def __init__(
        self,
        repository: RequestRepository,
        notifier: Notifier | None = None,
        default_ttl_minutes: int | None = None,
        max_ttl_minutes: int | None = None,
        attempts: int | None = None,
    ) -> None:
        self.repository = repository
        self.notifier = notifier
        self.default_ttl_minutes = default_ttl_minutes or settings.default_lock_ttl_minutes
        self.max_ttl_minutes = max_ttl_minutes or settings.max_lock_ttl_minutes
        self.attempts = max(1, attempts or settings.lock_cas_attempts)

    async def current(self, request_id: str, now: datetime | None = None) -> LockState:
        request = await self.repository.get(request_id, now)
        return request.lock if request.lock.is_held(now) else request.lock.release()

    async def acquire(
        self, request_id: str, donor_id: str, ttl_minutes: int | None = None, now: datetime | None = None
    ) -> LockResult:
        ttl = self.default_ttl_minutes if ttl_minutes is None else ttl_minutes
        if not 1 <= ttl <= self.max_ttl_minutes:
            raise InputValidationError(f"Lock duration must be between 1 and {self.max_ttl_minutes} minutes")

        for _ in range(self.attempts):
            request = await self.repository.get(request_id, now)
            if request.status != RequestStatus.PENDING:
                raise InvalidStateError(f"Only pending requests can be locked (request is {request.status})")
            moment = now or utcnow()
            if not request.lock.can_be_accepted_by(donor_id, moment):
                return _conflict(request.lock, moment)

            lock = request.lock.acquire(donor_id, ttl, moment)
            if await self.repository.compare_and_set(request, {"lock": lock_document(lock)}) is not None:
                logger.info("Request {} locked by donor {} until {}", request_id, donor_id, lock.lock_expires_at)
                return LockResult(
                    acquired=True,
                    locked_by=donor_id,
                    lock_expires_at=lock.lock_expires_at,
                    message=f"Request locked for {ttl} minutes",
                )
            logger.debug("Lock write on request {} lost a race; re-reading", request_id)

        request = await self.repository.get(request_id, now)
        return _conflict(request.lock, now or utcnow())

    async def release(self, request_id: str, donor_id: str | None = None, now: datetime | None = None) -> bool:
        """Release a lock. With ``donor_id`` only the holder may release an unexpired lock."""
        for _ in range(self.attempts):
            request = await self.repository.get(request_id, now)
            if not request.lock.is_locked:
                return False
            moment = now or utcnow()
            if donor_id is not None and request.lock.is_held(moment) and request.lock.locked_by != donor_id:
                raise LockConflictError(
                    request.lock.locked_by, request.lock.minutes_remaining(moment), request.lock.lock_expires_at
                )
            released = await self.repository.compare_and_set(request, {"lock": lock_document(request.lock.release())})
            if released is not None:
                logger.info("Lock on request {} released", request_id)
                return True
        raise InvalidStateError(f"Blood request {request_id} is being updated concurrently; retry")

    async def can_be_accepted_by(self, request_id: str, donor_id: str, now: datetime | None = None) -> bool:
        request = await self.repository.get(request_id, now)
        return request.lock.can_be_accepted_by(donor_id, now)

    async def respond(
        self,
        request_id: str,
        donor_id: str,
        response: str,
        decline_reason: str | None = None,
        now: datetime | None = None,
    ) -> BloodRequest:
        if response not in (DonorResponseStatus.ACCEPTED.value, DonorResponseStatus.DECLINED.value):
            raise InputValidationError("Response must be 'accepted' or 'declined'")
        accepted = response == DonorResponseStatus.ACCEPTED.value

        for _ in range(self.attempts):
            request = await self.repository.get(request_id, now)
            moment = now or utcnow()
            entry = request.matched_entry(donor_id)
            if entry is None:
                raise InvalidStateError(f"Donor {donor_id} was not matched to request {request_id}")
            if entry.response != DonorResponseStatus.PENDING:
                raise InvalidStateError(f"Donor {donor_id} already responded ({entry.response})")

            changes = {"matched_donors": self._with_response(request, donor_id, response, decline_reason, moment)}
            if accepted:
                if request.status != RequestStatus.PENDING:
                    raise InvalidStateError(f"Request {request_id} is {request.status} and can no longer be accepted")
                if not request.lock.can_be_accepted_by(donor_id, moment):
                    raise LockConflictError(
                        request.lock.locked_by, request.lock.minutes_remaining(moment), request.lock.lock_expires_at
                    )
                changes["status"] = RequestStatus.MATCHED.value
                changes["lock"] = lock_document(request.lock.release())
            elif request.lock.is_locked and request.lock.locked_by == donor_id:
                changes["lock"] = lock_document(request.lock.release())

            updated = await self.repository.compare_and_set(request, changes)
            if updated is not None:
                break
            logger.debug("Response write on request {} lost a race; re-reading", request_id)
        else:
            raise InvalidStateError(f"Blood request {request_id} is being updated concurrently; retry")

        logger.info("Donor {} {} request {}", donor_id, response, request_id)
        if accepted:
            await self._announce_acceptance(updated, donor_id)
        return updated

    @staticmethod
    def _with_response(
        request: BloodRequest, donor_id: str, response: str, decline_reason: str | None, moment: datetime
    ) -> List[dict]:
        entries: List[MatchedDonor] = []
        for entry in request.matched_donors:
            if entry.donor_id == donor_id:
                entry = entry.model_copy(
                    update={
                        "response": response,
                        "responded_at": moment,
                        "decline_reason": decline_reason if response == DonorResponseStatus.DECLINED.value else None,
                    }
                )
            entries.append(entry)
        return [entry.model_dump() for entry in entries]

    async def _announce_acceptance(self, request: BloodRequest, donor_id: str) -> None:
        await deliver(
            self.notifier,
            request.recipient_id,
            REQUEST_MATCHED,
            "Donor Found!",
            f"A donor has accepted your blood request for {request.patient_name or request.blood_type}",
            {"request_id": request.id, "donor_id": donor_id, "priority": "high"},
        )
        for entry in request.matched_donors:
            if entry.donor_id == donor_id or entry.response != DonorResponseStatus.PENDING:
                continue
            await deliver(
                self.notifier,
                entry.donor_id,
                SYSTEM,
                "Request No Longer Available",
                f"The blood request for {request.blood_type} at {request.hospital.name} "
                "has been accepted by another donor.",
                {"request_id": request.id},
            )
