"""
RFP lifecycle: every status transition and every persistence write goes through here.

RFP:      DRAFT -> SENT -> EVALUATING -> AWARDED | CLOSED (forward only)
Proposal: RECEIVED -> PARSED -> EVALUATED -> SELECTED | REJECTED

The AI service, the email gateway and the database session are injected, so the
same manager runs against ollama + SMTP + PostgreSQL in production and against
fakes + SQLite in tests.
"""
import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import (
    ConflictError,
    InvalidStatusError,
    NoProposalsError,
    NotFoundError,
    ValidationError,
)
from app.models import DispatchEvent, Proposal, ProposalStatus, RFP, RFPStatus, RFPVendor, Vendor
from app.schemas.rfp import DispatchReport, DispatchResult
from app.schemas.structures import ComparisonResult
from app.services.ai_service import AIService
from app.services.email_service import EmailService, render_rfp_email, rfp_email_subject

logger = logging.getLogger(__name__)

_MIN_EMAIL_LEN = 10
_RFP_EDITABLE_FIELDS = ("title", "items", "budget", "timeline", "terms", "requirements")
_EVALUATION_KEYS = {
    "score", "price_score", "delivery_score", "compliance_score", "terms_score", "strengths", "weaknesses",
}

# send and compare read-modify-write an RFP and its proposals; one at a time per RFP
# within this process. An entry lives only while some call holds or awaits it.
_rfp_locks: dict[str, asyncio.Lock] = {}
_rfp_lock_users: defaultdict[str, int] = defaultdict(int)


@asynccontextmanager
async def rfp_lock(rfp_id: str):
    lock = _rfp_locks.setdefault(rfp_id, asyncio.Lock())
    _rfp_lock_users[rfp_id] += 1
    try:
        async with lock:
            yield
    finally:
        _rfp_lock_users[rfp_id] -= 1
        if not _rfp_lock_users[rfp_id]:
            del _rfp_lock_users[rfp_id]
            del _rfp_locks[rfp_id]


def serialize_rfp(rfp: RFP) -> dict[str, Any]:
    """The RFP as the model and the email template see it."""
    return {
        "id": rfp.id,
        "title": rfp.title,
        "status": rfp.status,
        "items": rfp.items,
        "budget": rfp.budget,
        "timeline": rfp.timeline,
        "terms": rfp.terms,
        "requirements": rfp.requirements,
    }


def sort_by_score(proposals: Iterable[Any]) -> list[Any]:
    """Highest score first; unscored proposals last."""
    return sorted(proposals, key=lambda p: (p.score is None, -(p.score or 0)))


class RFPLifecycleManager:
    def __init__(self, db: Session, ai: AIService, notifier: EmailService):
        self.db = db
        self.ai = ai
        self.notifier = notifier

    # --- lookups ---

    def get_rfp(self, rfp_id: str) -> RFP:
        rfp = self.db.query(RFP).filter(RFP.id == rfp_id).first()
        if not rfp:
            raise NotFoundError("RFP not found")
        return rfp

    def get_vendor(self, vendor_id: str) -> Vendor:
        vendor = self.db.query(Vendor).filter(Vendor.id == vendor_id).first()
        if not vendor:
            raise NotFoundError("Vendor not found")
        return vendor

    def get_proposal(self, proposal_id: str) -> Proposal:
        proposal = self.db.query(Proposal).filter(Proposal.id == proposal_id).first()
        if not proposal:
            raise NotFoundError("Proposal not found")
        return proposal

    # --- transitions ---

    def _advance(self, rfp: RFP, target: str) -> None:
        """Move forward to target; never backwards and never out of AWARDED/CLOSED."""
        current = rfp.status
        if current in RFPStatus.TERMINAL or RFPStatus.ORDER[target] <= RFPStatus.ORDER[current]:
            logger.info("RFP %s stays %s (requested %s)", rfp.id, current, target)
            return
        rfp.status = target
        logger.info("RFP %s: %s -> %s", rfp.id, current, target)

    # --- RFPs ---

    async def create_rfp(self, natural_language_input: str) -> RFP:
        text = (natural_language_input or "").strip()
        structure = await asyncio.to_thread(self.ai.structure_request, text)
        data = structure.model_dump(by_alias=True)
        rfp = RFP(
            title=data["title"],
            raw_input=natural_language_input,
            status=RFPStatus.DRAFT,
            items=data["items"],
            budget=data["budget"],
            timeline=data["timeline"],
            terms=data["terms"],
            requirements=data["requirements"],
        )
        self.db.add(rfp)
        self.db.commit()
        self.db.refresh(rfp)
        logger.info("RFP %s created from %s chars of input", rfp.id, len(text))
        return rfp

    def update_rfp(self, rfp_id: str, fields: dict[str, Any]) -> RFP:
        """Direct overwrite of content fields. A status here is an administrative override."""
        status = fields.get("status")
        if status is not None and status not in RFPStatus.ALL:
            raise InvalidStatusError(f"Invalid status: {status}")
        rfp = self.get_rfp(rfp_id)
        for name in _RFP_EDITABLE_FIELDS:
            if fields.get(name) is not None:
                setattr(rfp, name, fields[name])
        if status is not None:
            self.override_rfp_status(rfp, status)
        self.db.commit()
        self.db.refresh(rfp)
        return rfp

    def override_rfp_status(self, rfp: RFP, status: str) -> None:
        """Set any RFP status, bypassing the transition graph. Caller commits."""
        if status not in RFPStatus.ALL:
            raise InvalidStatusError(f"Invalid status: {status}")
        logger.warning("Administrative override: RFP %s status %s -> %s", rfp.id, rfp.status, status)
        rfp.status = status

    def delete_rfp(self, rfp_id: str) -> None:
        rfp = self.get_rfp(rfp_id)
        self.db.delete(rfp)
        self.db.commit()
        logger.info("RFP %s deleted", rfp_id)

    def upsert_rfp_vendor(self, rfp_id: str, vendor_id: str, sent_at: datetime) -> RFPVendor:
        """One row per (rfp, vendor); a repeated send only moves sent_at. Caller commits."""
        link = (
            self.db.query(RFPVendor)
            .filter(RFPVendor.rfp_id == rfp_id, RFPVendor.vendor_id == vendor_id)
            .first()
        )
        if link:
            link.sent_at = sent_at
        else:
            link = RFPVendor(rfp_id=rfp_id, vendor_id=vendor_id, sent_at=sent_at)
            self.db.add(link)
            self.db.flush()
        return link

    async def send_rfp(self, rfp_id: str, vendor_ids: list[str]) -> DispatchReport:
        """
        Email the RFP to every resolved vendor concurrently and wait for all of them.
        A failed notification is reported, never raised; the RFP moves to SENT either way.
        """
        if not vendor_ids:
            raise ValidationError("At least one vendor is required", details=[{"field": "vendorIds", "message": "must not be empty"}])
        self.get_rfp(rfp_id)  # 404 before any lock entry is made
        async with rfp_lock(rfp_id):
            rfp = self.get_rfp(rfp_id)
            vendors = self.db.query(Vendor).filter(Vendor.id.in_(set(vendor_ids))).all()
            if not vendors:
                raise NotFoundError("No vendors found")
            dropped = len(set(vendor_ids)) - len(vendors)
            if dropped:
                logger.info("send_rfp %s: ignoring %s unknown vendor id(s)", rfp_id, dropped)

            context = serialize_rfp(rfp)
            subject = rfp_email_subject(context)
            outcomes = await asyncio.gather(
                *(
                    asyncio.to_thread(self.notifier.send, v.email, subject, render_rfp_email(v.name, context))
                    for v in vendors
                ),
                return_exceptions=True,
            )

            now = datetime.now(timezone.utc)
            results = []
            for vendor, outcome in zip(vendors, outcomes):
                if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                    raise outcome
                if isinstance(outcome, Exception) or not (outcome or {}).get("success"):
                    error = str(outcome) if isinstance(outcome, Exception) else "Notification reported failure"
                    logger.warning("send_rfp %s: email to %s failed: %s", rfp_id, vendor.email, error)
                    self.db.add(DispatchEvent(
                        rfp_id=rfp.id, vendor_id=vendor.id, recipient=vendor.email, success=False, error=error,
                    ))
                    results.append(DispatchResult(
                        vendor_id=vendor.id, vendor_name=vendor.name, email=vendor.email, success=False, error=error,
                    ))
                    continue
                message_id = outcome.get("messageId")
                self.upsert_rfp_vendor(rfp.id, vendor.id, now)
                self.db.add(DispatchEvent(
                    rfp_id=rfp.id, vendor_id=vendor.id, recipient=vendor.email, success=True, message_id=message_id,
                ))
                results.append(DispatchResult(
                    vendor_id=vendor.id, vendor_name=vendor.name, email=vendor.email, success=True,
                    message_id=message_id,
                ))

            self._advance(rfp, RFPStatus.SENT)
            self.db.commit()

        success_count = sum(1 for r in results if r.success)
        logger.info("send_rfp %s: %s sent, %s failed", rfp_id, success_count, len(results) - success_count)
        return DispatchReport(
            message=f"RFP sent to {success_count} vendors",
            success_count=success_count,
            failure_count=len(results) - success_count,
            results=results,
        )

    async def compare_proposals(self, rfp_id: str) -> ComparisonResult:
        self.get_rfp(rfp_id)  # 404 before any lock entry is made
        async with rfp_lock(rfp_id):
            rfp = self.get_rfp(rfp_id)
            eligible = (
                self.db.query(Proposal)
                .filter(Proposal.rfp_id == rfp_id, Proposal.status.in_(ProposalStatus.COMPARABLE))
                .order_by(Proposal.created_at.desc())
                .all()
            )
            if not eligible:
                raise NoProposalsError("No proposals to compare")

            candidates = [
                {
                    "proposalId": p.id,
                    "vendorId": p.vendor_id,
                    "vendorName": p.vendor.name if p.vendor else "",
                    "parsedData": p.parsed_data or {},
                }
                for p in eligible
            ]
            result = await asyncio.to_thread(self.ai.score_proposals, serialize_rfp(rfp), candidates)

            # newest proposal per vendor receives that vendor's ranking
            by_vendor: dict[str, Proposal] = {}
            for p in eligible:
                by_vendor.setdefault(p.vendor_id, p)
            matched = 0
            for ranking in result.rankings:
                proposal = by_vendor.get(ranking.vendor_id)
                if proposal is None:
                    logger.info("compare %s: ranking for unknown vendor %s ignored", rfp_id, ranking.vendor_id)
                    continue
                proposal.score = ranking.score
                proposal.evaluation = ranking.model_dump(by_alias=True, include=_EVALUATION_KEYS)
                proposal.status = ProposalStatus.EVALUATED
                matched += 1

            self._advance(rfp, RFPStatus.EVALUATING)
            self.db.commit()
        logger.info("compare %s: %s of %s proposal(s) scored", rfp_id, matched, len(eligible))
        return result

    # --- proposals ---

    async def receive_proposal(
        self, rfp_id: str, vendor_id: str, email_text: str, subject: Optional[str] = None
    ) -> Proposal:
        if len((email_text or "").strip()) < _MIN_EMAIL_LEN:
            raise ValidationError(
                f"Email must be at least {_MIN_EMAIL_LEN} characters",
                details=[{"field": "email", "message": f"at least {_MIN_EMAIL_LEN} characters required"}],
            )
        rfp = self.get_rfp(rfp_id)
        vendor = self.get_vendor(vendor_id)
        parsed = await asyncio.to_thread(self.ai.extract_proposal, serialize_rfp(rfp), email_text)
        proposal = Proposal(
            rfp_id=rfp.id,
            vendor_id=vendor.id,
            raw_email=email_text,
            email_subject=subject,
            parsed_data=parsed.model_dump(by_alias=True),
            status=ProposalStatus.PARSED,
        )
        self.db.add(proposal)
        self.db.commit()
        self.db.refresh(proposal)
        logger.info("Proposal %s received for RFP %s from vendor %s", proposal.id, rfp.id, vendor.id)
        return proposal

    async def reparse_proposal(self, proposal_id: str) -> Proposal:
        """Extract again from the stored email. The old score and evaluation no longer apply and are cleared."""
        proposal = self.get_proposal(proposal_id)
        parsed = await asyncio.to_thread(self.ai.extract_proposal, serialize_rfp(proposal.rfp), proposal.raw_email)
        proposal.parsed_data = parsed.model_dump(by_alias=True)
        proposal.score = None
        proposal.evaluation = None
        proposal.status = ProposalStatus.PARSED
        self.db.commit()
        self.db.refresh(proposal)
        logger.info("Proposal %s re-parsed", proposal_id)
        return proposal

    def override_proposal_status(self, proposal_id: str, status: str) -> Proposal:
        """Administrative override: any enumerated status, regardless of the current one."""
        if status not in ProposalStatus.ALL:
            raise InvalidStatusError(f"Invalid status: {status}")
        proposal = self.get_proposal(proposal_id)
        logger.warning("Administrative override: proposal %s status %s -> %s", proposal_id, proposal.status, status)
        proposal.status = status
        self.db.commit()
        self.db.refresh(proposal)
        return proposal

    def delete_proposal(self, proposal_id: str) -> None:
        proposal = self.get_proposal(proposal_id)
        self.db.delete(proposal)
        self.db.commit()
        logger.info("Proposal %s deleted", proposal_id)

    # --- vendors ---

    def _ensure_email_free(self, email: str, exclude_id: Optional[str] = None) -> None:
        q = self.db.query(Vendor).filter(Vendor.email == email)
        if exclude_id:
            q = q.filter(Vendor.id != exclude_id)
        if q.first():
            raise ConflictError("Vendor with this email already exists")

    def _commit_vendor(self, vendor: Vendor) -> Vendor:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError("Vendor with this email already exists") from e
        self.db.refresh(vendor)
        return vendor

    def create_vendor(self, fields: dict[str, Any]) -> Vendor:
        self._ensure_email_free(fields["email"])
        vendor = Vendor(**fields)
        self.db.add(vendor)
        vendor = self._commit_vendor(vendor)
        logger.info("Vendor %s created (%s)", vendor.id, vendor.email)
        return vendor

    def update_vendor(self, vendor_id: str, fields: dict[str, Any]) -> Vendor:
        vendor = self.get_vendor(vendor_id)
        fields = {
            k: v for k, v in fields.items()
            if v is not None or k not in ("name", "email", "contact_person")
        }
        if fields.get("email") and fields["email"] != vendor.email:
            self._ensure_email_free(fields["email"], exclude_id=vendor.id)
        for name, value in fields.items():
            setattr(vendor, name, value)
        return self._commit_vendor(vendor)

    def delete_vendor(self, vendor_id: str) -> None:
        vendor = self.get_vendor(vendor_id)
        self.db.delete(vendor)
        self.db.commit()
        logger.info("Vendor %s deleted", vendor_id)
