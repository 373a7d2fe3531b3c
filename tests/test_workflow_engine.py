"""
Tests for the workflow instance state machine
Sequential, parallel and conditional advance, cancellation and automatic steps
"""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from approval_engine.core.exceptions import ConflictError, ValidationError
from approval_engine.models.approval import ApprovalComment, ApprovalRequest
from approval_engine.models.workflow import StepExecution, WorkflowInstance
from approval_engine.schemas.approval import ReviewRequest
from approval_engine.schemas.workflow import InstanceFilters, TriggerEvent

NOW = datetime(2024, 3, 4, 9, 0)


def user_step(number, name, user, **extra):
    step = {
        "step_number": number,
        "name": name,
        "step_type": "approval",
        "assignee_type": "user",
        "assignee_ref": user.id,
    }
    step.update(extra)
    return step


def trigger_event(directory, entity_id="PO-100", **entity_data):
    return TriggerEvent(
        company_id=directory.company_id,
        trigger_type="purchase_order_create",
        entity_id=entity_id,
        entity_data=entity_data or {"amount": 500, "currency": "USD"},
        triggered_by=directory.requester.id,
    )


def open_requests(db, instance):
    return (
        db.query(ApprovalRequest)
        .filter(
            ApprovalRequest.workflow_instance_id == instance.id,
            ApprovalRequest.status.in_(["pending", "in_review", "more_info_required"]),
        )
        .all()
    )


def executions(db, instance):
    rows = db.query(StepExecution).filter(StepExecution.instance_id == instance.id).all()
    return {row.step_number: row for row in rows}


async def decide(services, directory, request, user, decision="approved", reason=None, at=NOW):
    return await services.approvals.review(
        request.id,
        directory.company_id,
        user.id,
        ReviewRequest(decision=decision, reason=reason),
        now=at,
    )


class TestTriggering:
    """Template matching and instance start"""

    @pytest.mark.asyncio
    async def test_trigger_starts_instance_at_first_step(self, make_template, services, directory, sender):
        await make_template(
            [user_step(1, "Buyer", directory.approver1), user_step(2, "Finance", directory.approver2)]
        )

        instances = await services.engine.trigger(trigger_event(directory), now=NOW)

        assert len(instances) == 1
        instance = instances[0]
        assert instance.status == "in_progress"
        assert instance.current_step_number == 1
        assert instance.started_at == NOW
        assert instance.entity_type == "purchase_order"

        requests = open_requests(services.db, instance)
        assert len(requests) == 1
        assert requests[0].assigned_to == directory.approver1.id
        assert requests[0].title == "Purchase order approval: Buyer"
        assert executions(services.db, instance)[1].status == "assigned"
        assert sender.sent_to("approver1@example.com", "approval_request")

    @pytest.mark.asyncio
    async def test_unmatched_conditions_start_nothing(self, make_template, services, directory):
        await make_template(
            [user_step(1, "Buyer", directory.approver1)],
            trigger_conditions={"threshold": {"operator": "gt", "value": 10000, "currency": "EUR"}},
        )

        started = await services.engine.trigger(
            trigger_event(directory, amount=15000, currency="USD"), now=NOW
        )

        assert started == []

    @pytest.mark.asyncio
    async def test_inactive_templates_ignored(self, make_template, services, directory):
        await make_template([user_step(1, "Buyer", directory.approver1)], is_active=False)

        assert await services.engine.trigger(trigger_event(directory), now=NOW) == []

    @pytest.mark.asyncio
    async def test_one_instance_per_matching_template(self, make_template, services, directory):
        await make_template([user_step(1, "Buyer", directory.approver1)], name="First")
        await make_template([user_step(1, "Finance", directory.approver2)], name="Second")

        instances = await services.engine.trigger(trigger_event(directory), now=NOW)

        assert len(instances) == 2
        assert len({instance.template_id for instance in instances}) == 2

    @pytest.mark.asyncio
    async def test_creator_must_belong_to_the_company(self, make_template, services, directory):
        await make_template([user_step(1, "Buyer", directory.approver1)])
        event = trigger_event(directory).model_copy(update={"triggered_by": str(uuid4())})

        with pytest.raises(ValidationError, match="not a user of this company"):
            await services.engine.trigger(event, now=NOW)

        assert services.db.query(WorkflowInstance).count() == 0

    @pytest.mark.asyncio
    async def test_creation_is_announced_in_real_time(self, make_template, services, directory, publisher):
        queue = publisher.subscribe(directory.company_id, directory.approver1.id)
        await make_template([user_step(1, "Buyer", directory.approver1)])

        await services.engine.trigger(trigger_event(directory), now=NOW)

        message = queue.get_nowait()
        assert message["type"] == "approval_created"
        assert message["data"]["title"] == "Purchase order approval: Buyer"


class TestSequentialAdvance:
    """Decisions resolve the step and activate its successor"""

    @pytest.mark.asyncio
    async def test_approve_then_reject_fails_instance_once(self, make_template, services, directory, sender):
        await make_template(
            [user_step(1, "Buyer", directory.approver1), user_step(2, "Finance", directory.approver2)]
        )
        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]

        first = open_requests(services.db, instance)[0]
        await decide(services, directory, first, directory.approver1, at=NOW + timedelta(hours=1))

        instance = await services.engine.get_instance(instance.id, directory.company_id)
        assert instance.status == "in_progress"
        assert instance.current_step_number == 2
        second = open_requests(services.db, instance)[0]
        assert second.assigned_to == directory.approver2.id

        rejected_at = NOW + timedelta(hours=2)
        await decide(
            services, directory, second, directory.approver2, "rejected", "Over budget", at=rejected_at
        )

        instance = await services.engine.get_instance(instance.id, directory.company_id)
        steps = executions(services.db, instance)
        assert instance.status == "failed"
        assert instance.completed_at == rejected_at
        assert steps[1].status == "completed"
        assert steps[1].outcome == "approved"
        assert steps[2].status == "failed"
        assert steps[2].outcome == "rejected"
        assert open_requests(services.db, instance) == []
        assert sender.sent_to("requester@example.com", "approval_rejected")

    @pytest.mark.asyncio
    async def test_all_steps_approved_completes(self, make_template, services, directory):
        await make_template(
            [user_step(1, "Buyer", directory.approver1), user_step(2, "Finance", directory.approver2)]
        )
        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]

        await decide(services, directory, open_requests(services.db, instance)[0], directory.approver1)
        await decide(services, directory, open_requests(services.db, instance)[0], directory.approver2)

        instance = await services.engine.get_instance(instance.id, directory.company_id)
        assert instance.status == "completed"
        assert instance.current_step_number is None
        assert instance.completed_at == NOW

    @pytest.mark.asyncio
    async def test_more_info_keeps_step_open(self, make_template, services, directory):
        await make_template([user_step(1, "Buyer", directory.approver1)])
        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]
        request = open_requests(services.db, instance)[0]

        await decide(services, directory, request, directory.approver1, "more_info_required", "Quote?")

        instance = await services.engine.get_instance(instance.id, directory.company_id)
        assert instance.status == "in_progress"
        assert executions(services.db, instance)[1].is_final is False


class TestParallelGroups:
    """Consecutive parallel steps decide together"""

    @pytest.fixture
    def parallel_steps(self, directory):
        def build(**extra):
            return [
                user_step(1, "Buyer", directory.approver1, allow_parallel=True, **extra),
                user_step(2, "Finance", directory.approver2, allow_parallel=True, **extra),
                user_step(3, "Manager", directory.manager, allow_parallel=True, **extra),
            ]

        return build

    def request_for(self, db, instance, user):
        return next(r for r in open_requests(db, instance) if r.assigned_to == user.id)

    @pytest.mark.asyncio
    async def test_group_activates_together(self, make_template, services, directory, parallel_steps):
        await make_template(parallel_steps())
        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]

        assert len(open_requests(services.db, instance)) == 3
        assert instance.current_step_number == 1

    @pytest.mark.asyncio
    async def test_majority_approval_completes(self, make_template, services, directory, parallel_steps):
        await make_template(parallel_steps())
        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]
        db = services.db

        await decide(services, directory, self.request_for(db, instance, directory.approver1), directory.approver1)
        await decide(
            services,
            directory,
            self.request_for(db, instance, directory.approver2),
            directory.approver2,
            "rejected",
            "Not needed",
        )
        instance = await services.engine.get_instance(instance.id, directory.company_id)
        assert instance.status == "in_progress"

        await decide(services, directory, self.request_for(db, instance, directory.manager), directory.manager)

        instance = await services.engine.get_instance(instance.id, directory.company_id)
        assert instance.status == "completed"

    @pytest.mark.asyncio
    async def test_majority_rejection_fails(self, make_template, services, directory, parallel_steps):
        await make_template(parallel_steps())
        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]
        db = services.db

        await decide(services, directory, self.request_for(db, instance, directory.approver1), directory.approver1)
        await decide(
            services, directory, self.request_for(db, instance, directory.approver2),
            directory.approver2, "rejected", "No",
        )
        await decide(
            services, directory, self.request_for(db, instance, directory.manager),
            directory.manager, "rejected", "No",
        )

        instance = await services.engine.get_instance(instance.id, directory.company_id)
        assert instance.status == "failed"

    @pytest.mark.asyncio
    async def test_all_required_fails_fast(self, make_template, services, directory, parallel_steps):
        await make_template(parallel_steps(all_required=True))
        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]
        db = services.db
        finance_request = self.request_for(db, instance, directory.approver2)

        await decide(
            services, directory, self.request_for(db, instance, directory.approver1),
            directory.approver1, "rejected", "Wrong supplier",
        )

        instance = await services.engine.get_instance(instance.id, directory.company_id)
        steps = executions(db, instance)
        assert instance.status == "failed"
        assert steps[1].status == "failed"
        assert steps[2].status == "skipped"
        assert steps[3].status == "skipped"
        db.refresh(finance_request)
        assert finance_request.status == "cancelled"
        assert open_requests(db, instance) == []


class TestConditionalBranching:
    """conditional_logic steps pick the next step from the entity data"""

    @pytest.fixture
    def branching_steps(self, directory):
        return [
            {
                "step_number": 1,
                "name": "Route by amount",
                "step_type": "conditional_logic",
                "conditions": {
                    "when": {"threshold": {"operator": "gt", "value": 10000}},
                    "branch_to": 3,
                },
            },
            user_step(2, "Team lead", directory.approver1),
            user_step(3, "Director", directory.approver2),
        ]

    @pytest.mark.asyncio
    async def test_matched_branch_skips_ahead(self, make_template, services, directory, branching_steps):
        await make_template(branching_steps)

        instance = (await services.engine.trigger(trigger_event(directory, amount=15000), now=NOW))[0]

        steps = executions(services.db, instance)
        assert steps[1].outcome == "branch_matched"
        assert 2 not in steps
        assert instance.current_step_number == 3
        assert open_requests(services.db, instance)[0].assigned_to == directory.approver2.id

    @pytest.mark.asyncio
    async def test_unmatched_branch_falls_through(self, make_template, services, directory, branching_steps):
        await make_template(branching_steps)

        instance = (await services.engine.trigger(trigger_event(directory, amount=500), now=NOW))[0]

        assert executions(services.db, instance)[1].outcome == "branch_unmatched"
        assert instance.current_step_number == 2
        assert open_requests(services.db, instance)[0].assigned_to == directory.approver1.id

    @pytest.mark.asyncio
    async def test_else_branch(self, make_template, services, directory):
        await make_template(
            [
                {
                    "step_number": 1,
                    "name": "Route",
                    "step_type": "conditional_logic",
                    "conditions": {
                        "when": {"field_conditions": [{"field": "supplier", "operator": "eq", "value": "ACME"}]},
                        "branch_to": 2,
                        "else_branch_to": 3,
                    },
                },
                user_step(2, "Preferred supplier", directory.approver1),
                user_step(3, "New supplier", directory.approver2),
            ]
        )

        instance = (
            await services.engine.trigger(trigger_event(directory, supplier="Globex"), now=NOW)
        )[0]

        assert instance.current_step_number == 3


class TestAutomaticSteps:
    """Steps that resolve without human work"""

    @pytest.mark.asyncio
    async def test_notification_and_action_steps_run_inline(
        self, make_template, make_services, db_session, directory, sender
    ):
        calls = []
        services = make_services(
            db_session, actions={"sync": lambda instance, step: calls.append(instance.entity_id)}
        )
        await make_template(
            [
                {
                    "step_number": 1,
                    "name": "Tell finance",
                    "step_type": "notification",
                    "assignee_type": "user",
                    "assignee_ref": directory.viewer.id,
                },
                {
                    "step_number": 2,
                    "name": "Sync ERP",
                    "step_type": "automatic_action",
                    "config": {"action": "sync"},
                },
                user_step(3, "Buyer", directory.approver1),
            ]
        )

        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]

        steps = executions(db_session, instance)
        assert steps[1].status == "completed"
        assert steps[1].assignee_ids == [directory.viewer.id]
        assert steps[2].outcome == "sync"
        assert calls == ["PO-100"]
        assert instance.current_step_number == 3
        assert sender.sent_to("viewer@example.com", "approval_request")

    @pytest.mark.asyncio
    async def test_fully_automatic_template_completes_at_trigger(self, make_template, services, directory):
        await make_template(
            [{"step_number": 1, "name": "Log", "step_type": "automatic_action", "config": {"action": "log"}}]
        )

        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]

        assert instance.status == "completed"
        assert instance.completed_at == NOW

    @pytest.mark.asyncio
    async def test_unknown_action_fails_instance(self, make_template, services, directory):
        await make_template(
            [{"step_number": 1, "name": "Push", "step_type": "integration", "config": {"action": "missing"}}]
        )

        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]

        assert instance.status == "failed"
        assert executions(services.db, instance)[1].outcome == "unknown_action:missing"

    @pytest.mark.asyncio
    async def test_stored_unknown_template_fails_step(self, make_template, services, directory, sender):
        template = await make_template(
            [
                {
                    "step_number": 1,
                    "name": "Tell finance",
                    "step_type": "notification",
                    "assignee_type": "user",
                    "assignee_ref": directory.viewer.id,
                }
            ]
        )
        # Rows written before template keys were checked
        template.steps[0].config = {"template": "bogus"}
        services.db.commit()

        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]

        assert instance.status == "failed"
        assert executions(services.db, instance)[1].outcome == "unknown_template:bogus"
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_failing_action_fails_step(self, make_template, make_services, db_session, directory):
        def explode(instance, step):
            raise RuntimeError("ERP down")

        services = make_services(db_session, actions={"sync": explode})
        await make_template(
            [{"step_number": 1, "name": "Sync", "step_type": "automatic_action", "config": {"action": "sync"}}]
        )

        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]

        assert instance.status == "failed"
        assert executions(db_session, instance)[1].outcome == "action_failed:sync"

    @pytest.mark.asyncio
    async def test_data_validation_uses_entity_data(self, make_template, services, directory):
        await make_template(
            [
                {
                    "step_number": 1,
                    "name": "Check quantity",
                    "step_type": "data_validation",
                    "conditions": {
                        "when": {"field_conditions": [{"field": "quantity", "operator": "gt", "value": 0}]}
                    },
                },
                user_step(2, "Buyer", directory.approver1),
            ]
        )

        valid = (await services.engine.trigger(trigger_event(directory, "PO-1", quantity=5), now=NOW))[0]
        invalid = (await services.engine.trigger(trigger_event(directory, "PO-2", quantity=0), now=NOW))[0]

        assert valid.status == "in_progress"
        assert executions(services.db, valid)[1].outcome == "valid"
        assert invalid.status == "failed"
        assert executions(services.db, invalid)[1].outcome == "invalid"


class TestUnassignableSteps:
    """Assignee resolution failures"""

    @pytest.mark.asyncio
    async def test_required_step_escalates_to_manager(self, make_template, services, directory):
        await make_template(
            [
                {
                    "step_number": 1,
                    "name": "Viewers",
                    "step_type": "approval",
                    "assignee_type": "role",
                    "assignee_ref": directory.viewer_role.id,
                }
            ]
        )

        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]

        request = open_requests(services.db, instance)[0]
        assert request.assigned_to == directory.manager.id
        assert request.escalation_level == 1
        assert executions(services.db, instance)[1].status == "escalated"

    @pytest.mark.asyncio
    async def test_optional_step_is_skipped(self, make_template, services, directory):
        await make_template(
            [
                {
                    "step_number": 1,
                    "name": "Viewers",
                    "step_type": "approval",
                    "assignee_type": "role",
                    "assignee_ref": directory.viewer_role.id,
                    "is_required": False,
                },
                user_step(2, "Buyer", directory.approver1),
            ]
        )

        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]

        assert executions(services.db, instance)[1].status == "skipped"
        assert instance.current_step_number == 2


class TestCancellationAndRecovery:

    @pytest.mark.asyncio
    async def test_cancel_closes_open_work(self, make_template, services, directory):
        await make_template([user_step(1, "Buyer", directory.approver1)])
        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]
        request = open_requests(services.db, instance)[0]

        cancelled = await services.engine.cancel_instance(
            instance.id, directory.company_id, directory.manager.id, "Order withdrawn", now=NOW
        )

        assert cancelled.status == "cancelled"
        assert cancelled.completed_at == NOW
        services.db.refresh(request)
        assert request.status == "cancelled"
        comments = (
            services.db.query(ApprovalComment)
            .filter(ApprovalComment.approval_request_id == request.id)
            .all()
        )
        assert [(c.comment, c.is_internal) for c in comments] == [("Cancelled: Order withdrawn", True)]

        with pytest.raises(ConflictError):
            await services.engine.cancel_instance(
                instance.id, directory.company_id, directory.manager.id, "Again"
            )

    @pytest.mark.asyncio
    async def test_decision_after_cancel_is_rejected(self, make_template, services, directory):
        await make_template([user_step(1, "Buyer", directory.approver1)])
        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]
        request = open_requests(services.db, instance)[0]
        await services.engine.cancel_instance(
            instance.id, directory.company_id, directory.manager.id, "Withdrawn"
        )

        with pytest.raises(ConflictError, match="already reviewed"):
            await decide(services, directory, request, directory.approver1)

    @pytest.mark.asyncio
    async def test_heal_restores_missing_active_step(self, make_template, services, directory):
        await make_template([user_step(1, "Buyer", directory.approver1)])
        instance = (await services.engine.trigger(trigger_event(directory), now=NOW))[0]
        instance.current_step_number = None
        services.db.commit()

        assert services.engine.heal_instance(instance, NOW) is True
        services.db.commit()

        assert instance.current_step_number == 1
        assert len(open_requests(services.db, instance)) == 1
        assert services.engine.heal_instance(instance, NOW) is False

    @pytest.mark.asyncio
    async def test_list_instances_filters(self, make_template, services, directory):
        await make_template([user_step(1, "Buyer", directory.approver1)])
        await services.engine.trigger(trigger_event(directory, "PO-1"), now=NOW)
        await services.engine.trigger(trigger_event(directory, "PO-2"), now=NOW + timedelta(minutes=5))

        instances, total = await services.engine.list_instances(
            directory.company_id, InstanceFilters(entity_id="PO-2")
        )
        assert total == 1
        assert instances[0].entity_id == "PO-2"

        instances, total = await services.engine.list_instances(directory.company_id, InstanceFilters())
        assert total == 2
        assert [i.entity_id for i in instances] == ["PO-2", "PO-1"]
