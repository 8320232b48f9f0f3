"""RFP lifecycle manager against SQLite, a scripted model and a recording notifier."""
import asyncio

import pytest

from app.errors import (
    AIResponseError,
    ConflictError,
    InvalidStatusError,
    NoProposalsError,
    NotFoundError,
    ValidationError,
)
from app.models import DispatchEvent, Proposal, ProposalStatus, RFP, RFPStatus, RFPVendor
from app.services import lifecycle as lifecycle_module
from app.services.ai_service import AIService
from app.services.lifecycle import RFPLifecycleManager

from tests.fakes import (
    PROPOSAL_JSON,
    RFP_JSON,
    FakeNotifier,
    OverlapTrackingBackend,
    RendezvousNotifier,
    ScriptedBackend,
    SlowNotifier,
    at,
    make_proposal,
    ranking,
)

REQUEST = "Need 5 laptops with 16GB RAM, budget $5000, delivery within 14 days."
REPLY = "We quote $4,500 total for 5 laptops, delivery in 10 days, Net 30."


class TestCreateRFP:
    @pytest.mark.asyncio
    async def test_persists_draft(self, lifecycle, ai_backend, db_session):
        ai_backend.queue(RFP_JSON)
        rfp = await lifecycle.create_rfp(REQUEST)
        assert rfp.status == RFPStatus.DRAFT
        assert rfp.raw_input == REQUEST
        assert rfp.items[0]["quantity"] == 5
        assert rfp.timeline["responseDeadline"] == "TBD"
        assert rfp.terms == {"paymentTerms": "Net 30", "warranty": "Standard warranty"}
        assert db_session.query(RFP).count() == 1

    @pytest.mark.asyncio
    async def test_ai_failure_persists_nothing(self, lifecycle, ai_backend, db_session):
        ai_backend.queue("not json at all")
        with pytest.raises(AIResponseError):
            await lifecycle.create_rfp(REQUEST)
        assert db_session.query(RFP).count() == 0

    @pytest.mark.asyncio
    async def test_short_input(self, lifecycle, db_session):
        with pytest.raises(ValidationError):
            await lifecycle.create_rfp("laptops")
        assert db_session.query(RFP).count() == 0


class TestUpdateRFP:
    def test_overwrites_only_given_fields(self, lifecycle, sample_rfp):
        rfp = lifecycle.update_rfp(sample_rfp.id, {"title": "Laptops for the sales team"})
        assert rfp.title == "Laptops for the sales team"
        assert rfp.budget == RFP_JSON["budget"]
        assert rfp.status == RFPStatus.DRAFT

    def test_status_override_may_move_backwards(self, lifecycle, sample_rfp, db_session):
        sample_rfp.status = RFPStatus.EVALUATING
        db_session.commit()
        rfp = lifecycle.update_rfp(sample_rfp.id, {"status": RFPStatus.DRAFT})
        assert rfp.status == RFPStatus.DRAFT

    def test_invalid_status_changes_nothing(self, lifecycle, sample_rfp, db_session):
        with pytest.raises(InvalidStatusError):
            lifecycle.update_rfp(sample_rfp.id, {"status": "BOGUS", "title": "Changed"})
        db_session.refresh(sample_rfp)
        assert sample_rfp.title == "Laptop procurement"
        assert sample_rfp.status == RFPStatus.DRAFT

    def test_unknown_rfp(self, lifecycle):
        with pytest.raises(NotFoundError):
            lifecycle.update_rfp("missing", {"title": "x"})


class TestAdvance:
    @pytest.mark.parametrize(
        "current,target,expected",
        [
            (RFPStatus.DRAFT, RFPStatus.SENT, RFPStatus.SENT),
            (RFPStatus.SENT, RFPStatus.SENT, RFPStatus.SENT),
            (RFPStatus.EVALUATING, RFPStatus.SENT, RFPStatus.EVALUATING),
            (RFPStatus.SENT, RFPStatus.EVALUATING, RFPStatus.EVALUATING),
            (RFPStatus.AWARDED, RFPStatus.EVALUATING, RFPStatus.AWARDED),
            (RFPStatus.CLOSED, RFPStatus.SENT, RFPStatus.CLOSED),
        ],
    )
    def test_forward_only(self, lifecycle, sample_rfp, current, target, expected):
        sample_rfp.status = current
        lifecycle._advance(sample_rfp, target)
        assert sample_rfp.status == expected


class TestSendRFP:
    @pytest.mark.asyncio
    async def test_all_delivered(self, lifecycle, sample_rfp, vendors, notifier, db_session):
        report = await lifecycle.send_rfp(sample_rfp.id, [v.id for v in vendors])
        assert report.success_count == 3
        assert report.failure_count == 0
        assert report.message == "RFP sent to 3 vendors"
        assert {m["to"] for m in notifier.sent} == {v.email for v in vendors}
        assert all(m["subject"] == "RFP: Laptop procurement" for m in notifier.sent)
        db_session.refresh(sample_rfp)
        assert sample_rfp.status == RFPStatus.SENT
        assert db_session.query(RFPVendor).filter_by(rfp_id=sample_rfp.id).count() == 3

    @pytest.mark.asyncio
    async def test_partial_failure_still_sends(self, lifecycle, sample_rfp, vendors, notifier, db_session):
        notifier.fail_for = {vendors[1].email}
        report = await lifecycle.send_rfp(sample_rfp.id, [v.id for v in vendors])
        assert report.success_count + report.failure_count == 3
        assert report.failure_count == 1
        failed = [r for r in report.results if not r.success]
        assert failed[0].vendor_id == vendors[1].id
        assert "Cannot connect" in failed[0].error
        db_session.refresh(sample_rfp)
        assert sample_rfp.status == RFPStatus.SENT
        linked = {link.vendor_id for link in db_session.query(RFPVendor).filter_by(rfp_id=sample_rfp.id)}
        assert linked == {vendors[0].id, vendors[2].id}
        events = db_session.query(DispatchEvent).filter_by(rfp_id=sample_rfp.id).all()
        assert len(events) == 3
        assert sorted(e.success for e in events) == [False, True, True]

    @pytest.mark.asyncio
    async def test_every_notification_fails(self, lifecycle, sample_rfp, vendors, notifier, db_session):
        notifier.fail_for = {v.email for v in vendors}
        report = await lifecycle.send_rfp(sample_rfp.id, [v.id for v in vendors])
        assert report.success_count == 0
        assert report.failure_count == 3
        db_session.refresh(sample_rfp)
        assert sample_rfp.status == RFPStatus.SENT

    @pytest.mark.asyncio
    async def test_resend_keeps_one_link_per_vendor(self, lifecycle, sample_rfp, vendors, db_session):
        await lifecycle.send_rfp(sample_rfp.id, [vendors[0].id])
        await lifecycle.send_rfp(sample_rfp.id, [vendors[0].id])
        assert db_session.query(RFPVendor).filter_by(rfp_id=sample_rfp.id).count() == 1
        assert db_session.query(DispatchEvent).filter_by(rfp_id=sample_rfp.id).count() == 2

    @pytest.mark.asyncio
    async def test_unknown_vendor_ids_are_ignored(self, lifecycle, sample_rfp, vendors):
        report = await lifecycle.send_rfp(sample_rfp.id, [vendors[0].id, "no-such-vendor"])
        assert report.success_count == 1
        assert len(report.results) == 1

    @pytest.mark.asyncio
    async def test_no_known_vendors(self, lifecycle, sample_rfp, db_session):
        with pytest.raises(NotFoundError, match="No vendors found"):
            await lifecycle.send_rfp(sample_rfp.id, ["nope"])
        db_session.refresh(sample_rfp)
        assert sample_rfp.status == RFPStatus.DRAFT

    @pytest.mark.asyncio
    async def test_empty_vendor_list(self, lifecycle, sample_rfp):
        with pytest.raises(ValidationError):
            await lifecycle.send_rfp(sample_rfp.id, [])

    @pytest.mark.asyncio
    async def test_send_does_not_move_evaluating_back(self, lifecycle, sample_rfp, vendors, db_session):
        sample_rfp.status = RFPStatus.EVALUATING
        db_session.commit()
        await lifecycle.send_rfp(sample_rfp.id, [vendors[0].id])
        db_session.refresh(sample_rfp)
        assert sample_rfp.status == RFPStatus.EVALUATING

    @pytest.mark.asyncio
    async def test_notifications_are_in_flight_together(self, db_session, sample_rfp, vendors):
        notifier = RendezvousNotifier(parties=len(vendors))
        manager = RFPLifecycleManager(db_session, AIService(ScriptedBackend()), notifier)
        report = await manager.send_rfp(sample_rfp.id, [v.id for v in vendors])
        assert report.success_count == 3
        assert report.failure_count == 0

    @pytest.mark.asyncio
    async def test_slow_vendor_does_not_hold_up_the_others(self, db_session, sample_rfp, vendors):
        notifier = SlowNotifier(vendors[0].email, others=2)
        manager = RFPLifecycleManager(db_session, AIService(ScriptedBackend()), notifier)
        report = await manager.send_rfp(sample_rfp.id, [v.id for v in vendors])
        assert report.success_count == 3
        assert notifier.sent[-1]["to"] == vendors[0].email


class TestUpsertRFPVendor:
    def test_second_upsert_moves_sent_at(self, lifecycle, sample_rfp, vendors, db_session):
        lifecycle.upsert_rfp_vendor(sample_rfp.id, vendors[0].id, at(1))
        link = lifecycle.upsert_rfp_vendor(sample_rfp.id, vendors[0].id, at(5))
        db_session.commit()
        assert db_session.query(RFPVendor).count() == 1
        assert link.sent_at.day == 5


class TestCompareProposals:
    @pytest.mark.asyncio
    async def test_scores_and_advances(self, lifecycle, ai_backend, sample_rfp, vendors, db_session):
        sample_rfp.status = RFPStatus.SENT
        db_session.commit()
        p1 = make_proposal(db_session, sample_rfp, vendors[0])
        p2 = make_proposal(db_session, sample_rfp, vendors[1])
        ai_backend.queue({
            "rankings": [ranking(vendors[0].id, 88, "Acme Computers"), ranking(vendors[1].id, 64, "Beta Supplies")],
            "recommendation": {"vendorId": vendors[0].id, "vendorName": "Acme Computers", "reasoning": "Cheapest"},
            "summary": "Acme wins",
        })
        result = await lifecycle.compare_proposals(sample_rfp.id)
        assert result.recommendation.vendor_id == vendors[0].id
        for p in (p1, p2):
            db_session.refresh(p)
            assert p.status == ProposalStatus.EVALUATED
        assert p1.score == 88
        assert p2.score == 64
        assert p1.evaluation["priceScore"] == 88
        assert p1.evaluation["strengths"] == ["Price"]
        assert "vendorId" not in p1.evaluation
        db_session.refresh(sample_rfp)
        assert sample_rfp.status == RFPStatus.EVALUATING

    @pytest.mark.asyncio
    async def test_candidates_sent_to_model(self, lifecycle, ai_backend, sample_rfp, vendors, db_session):
        p = make_proposal(db_session, sample_rfp, vendors[0])
        ai_backend.queue({"rankings": [], "summary": ""})
        await lifecycle.compare_proposals(sample_rfp.id)
        candidates = ai_backend.calls[0]["payload"]["proposals"]
        assert candidates == [{
            "proposalId": p.id,
            "vendorId": vendors[0].id,
            "vendorName": "Acme Computers",
            "parsedData": PROPOSAL_JSON,
        }]

    @pytest.mark.asyncio
    async def test_only_parsed_and_evaluated_are_compared(self, lifecycle, ai_backend, sample_rfp, vendors, db_session):
        make_proposal(db_session, sample_rfp, vendors[0], status=ProposalStatus.RECEIVED)
        make_proposal(db_session, sample_rfp, vendors[1], status=ProposalStatus.REJECTED)
        evaluated = make_proposal(db_session, sample_rfp, vendors[2], status=ProposalStatus.EVALUATED, score=50)
        ai_backend.queue({"rankings": [ranking(vendors[2].id, 70)], "summary": ""})
        await lifecycle.compare_proposals(sample_rfp.id)
        assert [c["proposalId"] for c in ai_backend.calls[0]["payload"]["proposals"]] == [evaluated.id]

    @pytest.mark.asyncio
    async def test_no_eligible_proposals(self, lifecycle, ai_backend, sample_rfp, vendors, db_session):
        sample_rfp.status = RFPStatus.SENT
        db_session.commit()
        make_proposal(db_session, sample_rfp, vendors[0], status=ProposalStatus.RECEIVED)
        with pytest.raises(NoProposalsError):
            await lifecycle.compare_proposals(sample_rfp.id)
        assert ai_backend.calls == []
        db_session.refresh(sample_rfp)
        assert sample_rfp.status == RFPStatus.SENT

    @pytest.mark.asyncio
    async def test_unmatched_rankings_are_ignored(self, lifecycle, ai_backend, sample_rfp, vendors, db_session):
        p = make_proposal(db_session, sample_rfp, vendors[0])
        ai_backend.queue({"rankings": [ranking("hallucinated-vendor", 99), ranking(vendors[0].id, 75)], "summary": ""})
        result = await lifecycle.compare_proposals(sample_rfp.id)
        assert len(result.rankings) == 2
        db_session.refresh(p)
        assert p.score == 75
        assert db_session.query(Proposal).filter(Proposal.score == 99).count() == 0

    @pytest.mark.asyncio
    async def test_newest_proposal_per_vendor_gets_the_score(
        self, lifecycle, ai_backend, sample_rfp, vendors, db_session
    ):
        older = make_proposal(db_session, sample_rfp, vendors[0], created_at=at(1))
        newer = make_proposal(db_session, sample_rfp, vendors[0], created_at=at(3))
        ai_backend.queue({"rankings": [ranking(vendors[0].id, 81)], "summary": ""})
        await lifecycle.compare_proposals(sample_rfp.id)
        db_session.refresh(older)
        db_session.refresh(newer)
        assert newer.score == 81
        assert newer.status == ProposalStatus.EVALUATED
        assert older.score is None
        assert older.status == ProposalStatus.PARSED

    @pytest.mark.asyncio
    async def test_ai_failure_leaves_state_alone(self, lifecycle, ai_backend, sample_rfp, vendors, db_session):
        sample_rfp.status = RFPStatus.SENT
        db_session.commit()
        p = make_proposal(db_session, sample_rfp, vendors[0])
        ai_backend.queue(TimeoutError("model timed out"))
        with pytest.raises(AIResponseError):
            await lifecycle.compare_proposals(sample_rfp.id)
        db_session.refresh(p)
        db_session.refresh(sample_rfp)
        assert p.status == ProposalStatus.PARSED
        assert sample_rfp.status == RFPStatus.SENT

    @pytest.mark.asyncio
    async def test_rankings_without_vendor_id_are_ignored(
        self, lifecycle, ai_backend, sample_rfp, vendors, db_session
    ):
        p = make_proposal(db_session, sample_rfp, vendors[0])
        ai_backend.queue({
            "rankings": [
                ranking(vendors[0].id, 75),
                dict(ranking("placeholder", 90), vendorId=None),
                {"vendorName": "Unnamed", "score": 60},
            ],
            "summary": "",
        })
        result = await lifecycle.compare_proposals(sample_rfp.id)
        assert [r.vendor_id for r in result.rankings] == [vendors[0].id]
        db_session.refresh(p)
        assert p.score == 75
        assert p.status == ProposalStatus.EVALUATED


class TestProposals:
    @pytest.mark.asyncio
    async def test_receive(self, lifecycle, ai_backend, sample_rfp, vendors):
        ai_backend.queue(PROPOSAL_JSON)
        p = await lifecycle.receive_proposal(sample_rfp.id, vendors[0].id, REPLY, "Re: RFP: Laptop procurement")
        assert p.status == ProposalStatus.PARSED
        assert p.raw_email == REPLY
        assert p.email_subject == "Re: RFP: Laptop procurement"
        assert p.parsed_data["totalPrice"] == 4500
        assert p.score is None
        assert REPLY in ai_backend.calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_receive_for_unknown_vendor_skips_the_model(self, lifecycle, ai_backend, sample_rfp):
        with pytest.raises(NotFoundError, match="Vendor not found"):
            await lifecycle.receive_proposal(sample_rfp.id, "missing", REPLY)
        assert ai_backend.calls == []

    @pytest.mark.asyncio
    async def test_receive_for_unknown_rfp(self, lifecycle, ai_backend, vendors):
        with pytest.raises(NotFoundError, match="RFP not found"):
            await lifecycle.receive_proposal("missing", vendors[0].id, REPLY)

    @pytest.mark.asyncio
    async def test_receive_short_email(self, lifecycle, sample_rfp, vendors):
        with pytest.raises(ValidationError):
            await lifecycle.receive_proposal(sample_rfp.id, vendors[0].id, "ok")

    @pytest.mark.asyncio
    async def test_receive_ai_failure_stores_nothing(self, lifecycle, ai_backend, sample_rfp, vendors, db_session):
        ai_backend.queue({"totalPrice": "lots"})
        with pytest.raises(AIResponseError):
            await lifecycle.receive_proposal(sample_rfp.id, vendors[0].id, REPLY)
        assert db_session.query(Proposal).count() == 0

    @pytest.mark.asyncio
    async def test_reparse_clears_score(self, lifecycle, ai_backend, sample_rfp, vendors, db_session):
        p = make_proposal(db_session, sample_rfp, vendors[0], status=ProposalStatus.EVALUATED, score=77)
        p.evaluation = {"score": 77}
        db_session.commit()
        raw = p.raw_email
        ai_backend.queue(dict(PROPOSAL_JSON, totalPrice=4300))
        p = await lifecycle.reparse_proposal(p.id)
        assert p.status == ProposalStatus.PARSED
        assert p.score is None
        assert p.evaluation is None
        assert p.parsed_data["totalPrice"] == 4300
        assert p.raw_email == raw

    def test_override_status(self, lifecycle, sample_rfp, vendors, db_session):
        p = make_proposal(db_session, sample_rfp, vendors[0], status=ProposalStatus.REJECTED)
        assert lifecycle.override_proposal_status(p.id, ProposalStatus.RECEIVED).status == ProposalStatus.RECEIVED

    def test_override_bogus_status(self, lifecycle, sample_rfp, vendors, db_session):
        p = make_proposal(db_session, sample_rfp, vendors[0])
        with pytest.raises(InvalidStatusError):
            lifecycle.override_proposal_status(p.id, "BOGUS")
        db_session.refresh(p)
        assert p.status == ProposalStatus.PARSED

    def test_delete_missing(self, lifecycle):
        with pytest.raises(NotFoundError):
            lifecycle.delete_proposal("missing")


class TestVendors:
    def test_duplicate_email(self, lifecycle, vendors):
        with pytest.raises(ConflictError):
            lifecycle.create_vendor({"name": "Copy", "email": vendors[0].email, "contact_person": "Someone"})

    def test_update_to_taken_email(self, lifecycle, vendors):
        with pytest.raises(ConflictError):
            lifecycle.update_vendor(vendors[1].id, {"email": vendors[0].email})

    def test_update_ignores_nulls_for_required_fields(self, lifecycle, vendors):
        v = lifecycle.update_vendor(vendors[0].id, {"name": None, "phone": "+1 555 0100"})
        assert v.name == "Acme Computers"
        assert v.phone == "+1 555 0100"

    def test_delete_removes_proposals_and_links(self, lifecycle, sample_rfp, vendors, db_session):
        make_proposal(db_session, sample_rfp, vendors[0])
        lifecycle.upsert_rfp_vendor(sample_rfp.id, vendors[0].id, at(2))
        db_session.commit()
        lifecycle.delete_vendor(vendors[0].id)
        assert db_session.query(Proposal).count() == 0
        assert db_session.query(RFPVendor).count() == 0


class TestDeleteRFP:
    def test_cascades(self, lifecycle, sample_rfp, vendors, db_session):
        make_proposal(db_session, sample_rfp, vendors[0])
        lifecycle.upsert_rfp_vendor(sample_rfp.id, vendors[0].id, at(2))
        db_session.commit()
        lifecycle.delete_rfp(sample_rfp.id)
        assert db_session.query(RFP).count() == 0
        assert db_session.query(Proposal).count() == 0
        assert db_session.query(RFPVendor).count() == 0


class TestRFPLock:
    @pytest.mark.asyncio
    async def test_unknown_rfp_leaves_no_lock_entry(self, lifecycle, vendors):
        for i in range(50):
            with pytest.raises(NotFoundError):
                await lifecycle.send_rfp(f"missing-{i}", [vendors[0].id])
            with pytest.raises(NotFoundError):
                await lifecycle.compare_proposals(f"missing-{i}")
        assert not any(key.startswith("missing-") for key in lifecycle_module._rfp_locks)
        assert not any(key.startswith("missing-") for key in lifecycle_module._rfp_lock_users)

    @pytest.mark.asyncio
    async def test_entry_is_released_after_success_and_failure(self, lifecycle, sample_rfp, vendors):
        await lifecycle.send_rfp(sample_rfp.id, [vendors[0].id])
        assert sample_rfp.id not in lifecycle_module._rfp_locks
        with pytest.raises(NotFoundError):
            await lifecycle.send_rfp(sample_rfp.id, ["no-such-vendor"])
        with pytest.raises(NoProposalsError):
            await lifecycle.compare_proposals(sample_rfp.id)
        assert sample_rfp.id not in lifecycle_module._rfp_locks
        assert sample_rfp.id not in lifecycle_module._rfp_lock_users

    @pytest.mark.asyncio
    async def test_concurrent_compares_run_one_at_a_time(self, db_session, sample_rfp, vendors):
        make_proposal(db_session, sample_rfp, vendors[0])
        make_proposal(db_session, sample_rfp, vendors[1])
        backend = OverlapTrackingBackend([
            {"rankings": [ranking(vendors[0].id, 70), ranking(vendors[1].id, 60)], "summary": "first"},
            {"rankings": [ranking(vendors[0].id, 80), ranking(vendors[1].id, 65)], "summary": "second"},
        ])
        manager = RFPLifecycleManager(db_session, AIService(backend), FakeNotifier())
        first, second = await asyncio.gather(
            manager.compare_proposals(sample_rfp.id),
            manager.compare_proposals(sample_rfp.id),
        )
        assert len(backend.calls) == 2
        assert backend.max_active == 1
        assert {first.summary, second.summary} == {"first", "second"}
        assert sample_rfp.id not in lifecycle_module._rfp_locks

    @pytest.mark.asyncio
    async def test_send_waits_for_running_compare(self, db_session, sample_rfp, vendors):
        make_proposal(db_session, sample_rfp, vendors[0])
        backend = OverlapTrackingBackend([{"rankings": [ranking(vendors[0].id, 70)], "summary": ""}], delay=0.2)
        order = []

        class RecordingNotifier(FakeNotifier):
            def send(self, to_address, subject, html_body):
                order.append(("send", backend.active))
                return super().send(to_address, subject, html_body)

        manager = RFPLifecycleManager(db_session, AIService(backend), RecordingNotifier())
        await asyncio.gather(
            manager.compare_proposals(sample_rfp.id),
            manager.send_rfp(sample_rfp.id, [vendors[1].id]),
        )
        assert order == [("send", 0)]
        assert len(backend.calls) == 1
