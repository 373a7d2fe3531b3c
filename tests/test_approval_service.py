"""
Tests for the approval request lifecycle
"""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from pydantic import ValidationError as PydanticValidationError

from approval_engine.core.exceptions import (
    ConflictError,
    PermissionDeniedError,
    ValidationError,
)
from approval_engine.models.approval import ApprovalDecision, ApprovalRequest
from approval_engine.schemas.approval import (
    ApprovalFilters,
    ApprovalRequestCreate,
    CommentCreate,
    ReviewRequest,
    SupplyInfoRequest,
)

NOW = datetime(2024, 3, 4, 9, 0)


def adhoc(**overrides):
    payload = {
        "entity_type": "purchase_order",
        "entity_id": "PO-42",
        "request_type": "approve",
        "title": "Approve PO-42",
        "priority": "Medium",
    }
    payload.update(overrides)
    return ApprovalRequestCreate.model_validate(payload)


@pytest.fixture
def create(services, directory):
    """Create an ad-hoc request as the requester"""

    async def factory(at=NOW, **overrides):
        overrides.setdefault("assigned_to", directory.approver1.id)
        return await services.approvals.create_request(
            adhoc(**overrides), directory.company_id, directory.requester.id, now=at
        )

    return factory


class TestCreateRequest:

    @pytest.mark.asyncio
    async def test_create_notifies_assignee(self, create, directory, sender):
        request = await create()

        assert request.status == "pending"
        assert request.requested_by == directory.requester.id
        assert request.requested_at == NOW
        assert request.orphaned is False
        assert request.reminder_tier == 0
        message = sender.sent_to("approver1@example.com", "approval_request")[0]
        assert message["variables"]["title"] == "Approve PO-42"
        assert message["variables"]["requester_name"] == "Requester"

    @pytest.mark.asyncio
    async def test_role_assignment_notifies_every_member(self, create, directory, sender):
        await create(assigned_to=None, assigned_role=directory.approver_role.id)

        assert sender.sent_to("approver1@example.com")
        assert sender.sent_to("approver2@example.com")

    def test_exactly_one_assignee_required(self, directory):
        with pytest.raises(PydanticValidationError):
            adhoc()
        with pytest.raises(PydanticValidationError):
            adhoc(assigned_to=directory.approver1.id, assigned_role=directory.approver_role.id)

    @pytest.mark.asyncio
    async def test_requires_create_permission(self, services, directory):
        with pytest.raises(PermissionDeniedError):
            await services.approvals.create_request(
                adhoc(assigned_to=directory.approver2.id), directory.company_id, directory.approver1.id
            )

    @pytest.mark.asyncio
    async def test_assignee_must_belong_to_company(self, create):
        with pytest.raises(ValidationError, match="not a user of this company"):
            await create(assigned_to=str(uuid4()))

    @pytest.mark.asyncio
    async def test_ineligible_assignee_marks_orphan(self, create, directory):
        request = await create(assigned_to=directory.viewer.id)

        assert request.orphaned is True
        assert request.orphaned_at == NOW


class TestReview:

    @pytest.mark.asyncio
    async def test_open_for_review(self, create, services, directory):
        request = await create()

        opened = await services.approvals.open_for_review(
            request.id, directory.company_id, directory.approver1.id
        )
        assert opened.status == "in_review"

        # Opening again is a no-op
        again = await services.approvals.open_for_review(
            request.id, directory.company_id, directory.approver1.id
        )
        assert again.status == "in_review"

        with pytest.raises(PermissionDeniedError):
            await services.approvals.open_for_review(
                request.id, directory.company_id, directory.viewer.id
            )

    @pytest.mark.asyncio
    async def test_approve_records_decision(self, create, services, directory, sender):
        request = await create()
        decided_at = NOW + timedelta(hours=3)

        approved = await services.approvals.review(
            request.id,
            directory.company_id,
            directory.approver1.id,
            ReviewRequest(decision="approved", notes="Looks fine"),
            now=decided_at,
        )

        assert approved.status == "approved"
        assert approved.decision == "approved"
        assert approved.reviewed_by == directory.approver1.id
        assert approved.reviewed_at == decided_at
        assert approved.completed_at == decided_at
        assert sender.sent_to("requester@example.com", "approval_approved")
        comments = await services.approvals.get_comments(request.id, directory.company_id)
        assert [c.comment for c in comments] == ["Looks fine"]

    @pytest.mark.asyncio
    async def test_conditional_approval_counts_as_approved(self, create, services, directory):
        request = await create()

        decided = await services.approvals.review(
            request.id,
            directory.company_id,
            directory.approver1.id,
            ReviewRequest(decision="conditional_approval", reason="Only with net-30 terms"),
        )

        assert decided.status == "approved"
        assert decided.decision == "conditional_approval"

    @pytest.mark.asyncio
    async def test_only_assignee_may_review(self, create, services, directory):
        request = await create()

        with pytest.raises(PermissionDeniedError):
            await services.approvals.review(
                request.id,
                directory.company_id,
                directory.approver2.id,
                ReviewRequest(decision="approved"),
            )

    @pytest.mark.asyncio
    async def test_role_member_may_review(self, create, services, directory):
        request = await create(assigned_to=None, assigned_role=directory.approver_role.id)

        decided = await services.approvals.review(
            request.id,
            directory.company_id,
            directory.approver2.id,
            ReviewRequest(decision="approved"),
        )
        assert decided.reviewed_by == directory.approver2.id

    def test_reason_required_unless_approved(self):
        with pytest.raises(PydanticValidationError, match="reason is required"):
            ReviewRequest(decision="rejected")
        with pytest.raises(PydanticValidationError, match="reason is required"):
            ReviewRequest(decision="rejected", reason="   ")
        assert ReviewRequest(decision="approved").reason is None

    @pytest.mark.asyncio
    async def test_service_rejects_missing_reason(self, create, services, directory):
        request = await create()
        review = ReviewRequest.model_construct(
            decision=ApprovalDecision.REJECTED,
            reason=None,
            notes=None,
            delegate_to=None,
            delegate_role=None,
        )

        with pytest.raises(ValidationError, match="reason is required"):
            await services.approvals.review(
                request.id, directory.company_id, directory.approver1.id, review
            )
        services.db.refresh(request)
        assert request.status == "pending"

    @pytest.mark.asyncio
    async def test_second_review_conflicts(self, create, services, directory):
        request = await create()
        await services.approvals.review(
            request.id, directory.company_id, directory.approver1.id, ReviewRequest(decision="approved")
        )

        with pytest.raises(ConflictError, match="already reviewed"):
            await services.approvals.review(
                request.id,
                directory.company_id,
                directory.approver1.id,
                ReviewRequest(decision="rejected", reason="Changed my mind"),
            )

    @pytest.mark.asyncio
    async def test_concurrent_reviews_one_wins(self, create, services, directory, session_factory, make_services):
        request = await create()
        other_session = session_factory()
        try:
            other = make_services(other_session)
            # Second reviewer loaded the request before the first decision landed
            stale = other_session.query(ApprovalRequest).filter(ApprovalRequest.id == request.id).one()
            assert stale.status == "pending"

            await services.approvals.review(
                request.id, directory.company_id, directory.approver1.id, ReviewRequest(decision="approved")
            )

            with pytest.raises(ConflictError):
                await other.approvals.review(
                    request.id,
                    directory.company_id,
                    directory.approver1.id,
                    ReviewRequest(decision="rejected", reason="Too expensive"),
                )
        finally:
            other_session.close()

        services.db.refresh(request)
        assert request.status == "approved"
        assert request.decision == "approved"


class TestCommentsAndInfo:

    @pytest.mark.asyncio
    async def test_comment_moves_pending_to_in_review(self, create, services, directory):
        request = await create()

        await services.approvals.add_comment(
            request.id, directory.company_id, directory.requester.id, CommentCreate(comment="Urgent please")
        )

        services.db.refresh(request)
        assert request.status == "in_review"

    @pytest.mark.asyncio
    async def test_internal_comments_are_reviewer_only(self, create, services, directory):
        request = await create()
        await services.approvals.add_comment(
            request.id, directory.company_id, directory.requester.id, CommentCreate(comment="Public note")
        )
        await services.approvals.add_comment(
            request.id,
            directory.company_id,
            directory.approver1.id,
            CommentCreate(comment="Check supplier history", is_internal=True),
        )

        with pytest.raises(PermissionDeniedError, match="internal"):
            await services.approvals.add_comment(
                request.id,
                directory.company_id,
                directory.requester.id,
                CommentCreate(comment="Sneaky", is_internal=True),
            )
        with pytest.raises(PermissionDeniedError):
            await services.approvals.add_comment(
                request.id, directory.company_id, directory.viewer.id, CommentCreate(comment="Hi")
            )

        everything = await services.approvals.get_comments(request.id, directory.company_id)
        public = await services.approvals.get_comments(
            request.id, directory.company_id, include_internal=False
        )
        assert sorted(c.comment for c in everything) == ["Check supplier history", "Public note"]
        assert [c.comment for c in public] == ["Public note"]

    @pytest.mark.asyncio
    async def test_supply_info_returns_request_to_review(self, create, services, directory):
        request = await create(data={"amount": 1200})
        await services.approvals.review(
            request.id,
            directory.company_id,
            directory.approver1.id,
            ReviewRequest(decision="more_info_required", reason="Attach the quote"),
        )

        with pytest.raises(PermissionDeniedError):
            await services.approvals.supply_info(
                request.id,
                directory.company_id,
                directory.approver1.id,
                SupplyInfoRequest(comment="Here"),
            )

        updated = await services.approvals.supply_info(
            request.id,
            directory.company_id,
            directory.requester.id,
            SupplyInfoRequest(data={"quote": "Q-7"}, comment="Quote attached"),
        )

        assert updated.status == "in_review"
        assert updated.data == {"amount": 1200, "quote": "Q-7"}

        with pytest.raises(ConflictError):
            await services.approvals.supply_info(
                request.id,
                directory.company_id,
                directory.requester.id,
                SupplyInfoRequest(comment="Again"),
            )


class TestQueries:

    @pytest.mark.asyncio
    async def test_pending_ordered_by_priority_then_age(self, create, services, directory):
        low = await create(priority="Low", at=NOW - timedelta(hours=5))
        urgent = await create(priority="Urgent", at=NOW)
        high_old = await create(priority="High", at=NOW - timedelta(hours=2))
        high_new = await create(priority="High", at=NOW - timedelta(hours=1))
        via_role = await create(
            priority="Critical", assigned_to=None, assigned_role=directory.approver_role.id
        )
        await create(assigned_to=directory.approver2.id)

        pending = await services.approvals.get_pending_approvals(
            directory.company_id, directory.approver1.id
        )

        assert [r.id for r in pending] == [urgent.id, via_role.id, high_old.id, high_new.id, low.id]

    @pytest.mark.asyncio
    async def test_list_filters(self, create, services, directory):
        mine = await create()
        await create(assigned_to=directory.approver2.id, priority="High")
        await services.approvals.review(
            mine.id, directory.company_id, directory.approver1.id, ReviewRequest(decision="approved")
        )

        items, total = await services.approvals.list_approvals(
            directory.company_id, directory.approver1.id, ApprovalFilters(assigned_to_me=True)
        )
        assert total == 1 and items[0].id == mine.id

        items, total = await services.approvals.list_approvals(
            directory.company_id, directory.approver1.id, ApprovalFilters(status="pending")
        )
        assert total == 1 and items[0].priority == "High"

        items, total = await services.approvals.list_approvals(
            directory.company_id, directory.requester.id, ApprovalFilters(requested_by_me=True, limit=1)
        )
        assert total == 2 and len(items) == 1

    @pytest.mark.asyncio
    async def test_metrics(self, create, services, directory):
        approved = await create(at=NOW - timedelta(hours=4))
        rejected = await create(at=NOW - timedelta(hours=2))
        await create(priority="High")
        await services.approvals.review(
            approved.id, directory.company_id, directory.approver1.id,
            ReviewRequest(decision="approved"), now=NOW,
        )
        await services.approvals.review(
            rejected.id, directory.company_id, directory.approver1.id,
            ReviewRequest(decision="rejected", reason="No"), now=NOW,
        )

        metrics = await services.approvals.get_metrics(directory.company_id, now=NOW)

        assert metrics.total_requests == 3
        assert metrics.approved_requests == 1
        assert metrics.rejected_requests == 1
        assert metrics.pending_requests == 1
        assert metrics.avg_resolution_time_hours == 3.0
        assert metrics.completion_rate == 66.7
        assert metrics.pending_by_priority == {"High": 1}
        assert metrics.recent.total == 3
