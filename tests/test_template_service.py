"""
Tests for workflow template authoring and the step graph
"""

from datetime import datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from approval_engine.core.exceptions import ConflictError, NotFoundError, ValidationError
from approval_engine.schemas.workflow import (
    TriggerEvent,
    WorkflowTemplateCreate,
    WorkflowTemplateUpdate,
)
from approval_engine.services.template_service import StepGraph, validate_template_payload

NOW = datetime(2024, 3, 4, 9, 0)


def approval_step(number, name, role_id, **extra):
    step = {
        "step_number": number,
        "name": name,
        "step_type": "approval",
        "assignee_type": "role",
        "assignee_ref": role_id,
    }
    step.update(extra)
    return step


def template_payload(steps, **extra):
    payload = {
        "name": "Purchase order approval",
        "entity_type": "purchase_order",
        "trigger_type": "purchase_order_create",
        "steps": steps,
    }
    payload.update(extra)
    return payload


class TestTemplateValidation:
    """Schema level checks on template payloads"""

    def test_duplicate_step_numbers_rejected(self, directory):
        role = directory.approver_role.id
        with pytest.raises(PydanticValidationError, match="Step numbers must be unique"):
            WorkflowTemplateCreate.model_validate(
                template_payload([approval_step(1, "Review", role), approval_step(1, "Sign", role)])
            )

    def test_step_names_unique_case_insensitive(self, directory):
        role = directory.approver_role.id
        with pytest.raises(PydanticValidationError, match="case-insensitive"):
            WorkflowTemplateCreate.model_validate(
                template_payload([approval_step(1, "Review", role), approval_step(2, "review ", role)])
            )

    def test_threshold_trigger_requires_conditions(self, directory):
        steps = [approval_step(1, "Review", directory.approver_role.id)]
        with pytest.raises(PydanticValidationError, match="requires a threshold"):
            WorkflowTemplateCreate.model_validate(
                template_payload(steps, trigger_type="purchase_order_threshold")
            )

        data = WorkflowTemplateCreate.model_validate(
            template_payload(
                steps,
                trigger_type="purchase_order_threshold",
                trigger_conditions={"threshold": {"operator": "gt", "value": 10000}},
            )
        )
        assert data.trigger_conditions.threshold.value == 10000

    def test_role_assignee_requires_reference(self):
        with pytest.raises(PydanticValidationError, match="requires assignee_ref"):
            WorkflowTemplateCreate.model_validate(
                template_payload(
                    [{"step_number": 1, "name": "Review", "step_type": "approval", "assignee_type": "role"}]
                )
            )

    def test_human_step_requires_assignee_type(self):
        with pytest.raises(PydanticValidationError, match="requires an assignee_type"):
            WorkflowTemplateCreate.model_validate(
                template_payload([{"step_number": 1, "name": "Review", "step_type": "approval"}])
            )

    def test_conditional_step_requires_branch(self):
        with pytest.raises(PydanticValidationError, match="branch_to"):
            WorkflowTemplateCreate.model_validate(
                template_payload(
                    [{"step_number": 1, "name": "Route", "step_type": "conditional_logic"}]
                )
            )

    def test_notification_step_template_must_exist(self, directory):
        step = {
            "step_number": 1,
            "name": "Tell finance",
            "step_type": "notification",
            "assignee_type": "role",
            "assignee_ref": directory.approver_role.id,
            "config": {"template": "bogus"},
        }

        with pytest.raises(PydanticValidationError, match="unknown notification template 'bogus'"):
            WorkflowTemplateCreate.model_validate(template_payload([step]))
        with pytest.raises(ValidationError) as exc_info:
            validate_template_payload(template_payload([step]))
        assert exc_info.value.status_code == 422

        step["config"] = {"template": "approval_approved"}
        assert WorkflowTemplateCreate.model_validate(template_payload([step])).steps[0].config == {
            "template": "approval_approved"
        }

    def test_action_step_requires_action_name(self):
        step = {
            "step_number": 1,
            "name": "Sync ledger",
            "step_type": "automatic_action",
            "config": {"action": ""},
        }

        with pytest.raises(PydanticValidationError, match="non-empty action name"):
            WorkflowTemplateCreate.model_validate(template_payload([step]))

    def test_validate_template_payload_maps_errors(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_template_payload({"name": "Broken"})

        assert exc_info.value.status_code == 422
        assert exc_info.value.details["errors"]


class TestStepGraph:
    """Grouping, successors and branch targets"""

    def test_consecutive_parallel_steps_form_one_group(self, directory):
        role = directory.approver_role.id
        data = WorkflowTemplateCreate.model_validate(
            template_payload(
                [
                    approval_step(1, "Buyer", role),
                    approval_step(2, "Finance", role, allow_parallel=True),
                    approval_step(3, "Legal", role, allow_parallel=True),
                    approval_step(4, "Director", role),
                ]
            )
        )
        graph = StepGraph.build(data.steps)

        assert graph.entry == 1
        assert graph.group_of(2) == (2, 3)
        assert graph.group_of(3) == (2, 3)
        assert graph.successor_of(1) == 2
        assert graph.successor_of(3) == 4
        assert graph.successor_of(4) is None

    def test_branch_to_unknown_step_rejected(self, directory):
        role = directory.approver_role.id
        data = WorkflowTemplateCreate.model_validate(
            template_payload(
                [
                    {
                        "step_number": 1,
                        "name": "Route",
                        "step_type": "conditional_logic",
                        "conditions": {
                            "when": {"threshold": {"operator": "gt", "value": 100}},
                            "branch_to": 7,
                        },
                    },
                    approval_step(2, "Review", role),
                ]
            )
        )
        with pytest.raises(ValidationError, match="unknown step 7"):
            StepGraph.build(data.steps)

    def test_backward_branch_rejected(self, directory):
        role = directory.approver_role.id
        data = WorkflowTemplateCreate.model_validate(
            template_payload(
                [
                    approval_step(1, "Review", role),
                    {
                        "step_number": 2,
                        "name": "Route",
                        "step_type": "conditional_logic",
                        "conditions": {
                            "when": {"threshold": {"operator": "gt", "value": 100}},
                            "branch_to": 1,
                        },
                    },
                ]
            )
        )
        with pytest.raises(ValidationError, match="only branch forward"):
            StepGraph.build(data.steps)

    def test_parallel_conditional_rejected(self, directory):
        data = WorkflowTemplateCreate.model_validate(
            template_payload(
                [
                    {
                        "step_number": 1,
                        "name": "Route",
                        "step_type": "conditional_logic",
                        "allow_parallel": True,
                        "conditions": {
                            "when": {"threshold": {"operator": "gt", "value": 100}},
                            "branch_to": 2,
                        },
                    },
                    approval_step(2, "Review", directory.approver_role.id),
                ]
            )
        )
        with pytest.raises(ValidationError, match="cannot run in parallel"):
            StepGraph.build(data.steps)

    def test_unknown_step_lookup(self, directory):
        data = WorkflowTemplateCreate.model_validate(
            template_payload([approval_step(1, "Review", directory.approver_role.id)])
        )
        with pytest.raises(NotFoundError):
            StepGraph.build(data.steps).node(9)


class TestTemplateService:
    """Persistence, lookup and immutability"""

    @pytest.mark.asyncio
    async def test_create_template_persists_steps_in_order(self, make_template, directory):
        role = directory.approver_role.id
        template = await make_template(
            [approval_step(2, "Finance", role), approval_step(1, "Buyer", role)],
            escalation_target={"assignee_type": "user", "assignee_ref": directory.manager.id},
        )

        assert template.id is not None
        assert template.company_id == directory.company_id
        assert [step.step_number for step in template.steps] == [1, 2]
        assert template.escalation_target["assignee_ref"] == directory.manager.id
        assert template.created_by == directory.requester.id

    @pytest.mark.asyncio
    async def test_create_rejects_invalid_graph_without_persisting(self, services, directory):
        data = WorkflowTemplateCreate.model_validate(
            template_payload(
                [
                    {
                        "step_number": 1,
                        "name": "Route",
                        "step_type": "conditional_logic",
                        "conditions": {
                            "when": {"threshold": {"operator": "gt", "value": 100}},
                            "branch_to": 5,
                        },
                    }
                ]
            )
        )
        with pytest.raises(ValidationError):
            await services.templates.create_template(data, directory.company_id, directory.requester.id)

        assert await services.templates.list_templates(directory.company_id) == []

    @pytest.mark.asyncio
    async def test_get_template_is_scoped_to_company(self, make_template, services, directory):
        template = await make_template([approval_step(1, "Review", directory.approver_role.id)])

        found = await services.templates.get_template(template.id, directory.company_id)
        assert found.id == template.id
        with pytest.raises(NotFoundError):
            await services.templates.get_template(template.id, "00000000-0000-0000-0000-000000000000")

    @pytest.mark.asyncio
    async def test_list_templates_filters(self, make_template, services, directory):
        role = directory.approver_role.id
        await make_template([approval_step(1, "Review", role)], name="Active")
        await make_template([approval_step(1, "Review", role)], name="Inactive", is_active=False)
        await make_template(
            [approval_step(1, "Review", role)],
            name="Sales",
            entity_type="sales_order",
            trigger_type="sales_order_create",
        )

        everything = await services.templates.list_templates(directory.company_id)
        active = await services.templates.list_templates(directory.company_id, active_only=True)
        sales = await services.templates.list_templates(
            directory.company_id, trigger_type="sales_order_create"
        )

        assert [t.name for t in everything] == ["Active", "Inactive", "Sales"]
        assert [t.name for t in active] == ["Active", "Sales"]
        assert [t.name for t in sales] == ["Sales"]

    @pytest.mark.asyncio
    async def test_update_metadata_and_steps_before_use(self, make_template, services, directory):
        role = directory.approver_role.id
        template = await make_template([approval_step(1, "Review", role)])

        updated = await services.templates.update_template(
            template.id,
            directory.company_id,
            WorkflowTemplateUpdate(
                name="Renamed",
                priority="High",
                steps=[approval_step(1, "Buyer", role), approval_step(2, "Finance", role)],
            ),
            directory.manager.id,
        )

        assert updated.name == "Renamed"
        assert updated.priority == "High"
        assert [step.name for step in updated.steps] == ["Buyer", "Finance"]
        assert updated.updated_by == directory.manager.id

    @pytest.mark.asyncio
    async def test_steps_immutable_once_instances_exist(self, make_template, services, directory):
        role = directory.approver_role.id
        template = await make_template([approval_step(1, "Review", role)])
        await services.engine.trigger(
            TriggerEvent(
                company_id=directory.company_id,
                trigger_type="purchase_order_create",
                entity_id="PO-1",
                entity_data={"amount": 500},
                triggered_by=directory.requester.id,
            ),
            now=NOW,
        )

        with pytest.raises(ConflictError, match="immutable"):
            await services.templates.update_template(
                template.id,
                directory.company_id,
                WorkflowTemplateUpdate(steps=[approval_step(1, "Other", role)]),
                directory.manager.id,
            )

        # Metadata stays editable
        renamed = await services.templates.update_template(
            template.id,
            directory.company_id,
            WorkflowTemplateUpdate(is_active=False),
            directory.manager.id,
        )
        assert renamed.is_active is False
        assert [step.name for step in renamed.steps] == ["Review"]

    @pytest.mark.asyncio
    async def test_clearing_required_conditions_rejected(self, make_template, services, directory):
        template = await make_template(
            [approval_step(1, "Review", directory.approver_role.id)],
            trigger_type="purchase_order_threshold",
            trigger_conditions={"threshold": {"operator": "gt", "value": 1000}},
        )

        with pytest.raises(ValidationError, match="requires a threshold"):
            await services.templates.update_template(
                template.id,
                directory.company_id,
                WorkflowTemplateUpdate(trigger_conditions=None),
                directory.manager.id,
            )
