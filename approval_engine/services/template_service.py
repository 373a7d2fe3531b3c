"""
Workflow Template Store

Authoring and lookup of workflow templates. Templates are validated in full at
create/update time (unique step numbers and names, trigger conditions, branch
targets) and their steps become immutable once an instance uses them.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from approval_engine.core.exceptions import (
    ApprovalEngineError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from approval_engine.models.workflow import (
    StepType,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
)
from approval_engine.schemas.conditions import StepConditions, TriggerConditions
from approval_engine.schemas.workflow import (
    REQUIRES_CONDITIONS,
    WorkflowStepCreate,
    WorkflowTemplateCreate,
    WorkflowTemplateUpdate,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepNode:
    step_number: int
    group: Tuple[int, ...]
    successor: Optional[int]
    branch_to: Optional[int] = None
    else_branch_to: Optional[int] = None


class StepGraph:
    """Explicit step graph: nodes keyed by step number with successor edges

    Consecutive parallel steps form one group that activates together; the
    group's successor is the first step after it. Conditional steps carry
    branch edges which must point forward to an existing step.
    """

    def __init__(self, nodes: Dict[int, StepNode], entry: Optional[int]):
        self.nodes = nodes
        self.entry = entry

    @classmethod
    def build(cls, steps) -> "StepGraph":
        ordered = sorted(steps, key=lambda step: step.step_number)
        numbers = [step.step_number for step in ordered]
        if len(numbers) != len(set(numbers)):
            raise ValidationError("Step numbers must be unique")

        groups: List[List] = []
        for step in ordered:
            parallel = _is_parallel(step)
            if parallel and _step_type(step) == StepType.CONDITIONAL_LOGIC.value:
                raise ValidationError(
                    f"Conditional step {step.step_number} cannot run in parallel"
                )
            if parallel and groups and _is_parallel(groups[-1][-1]):
                groups[-1].append(step)
            else:
                groups.append([step])

        existing = set(numbers)
        nodes: Dict[int, StepNode] = {}
        for index, group in enumerate(groups):
            members = tuple(step.step_number for step in group)
            successor = groups[index + 1][0].step_number if index + 1 < len(groups) else None
            for step in group:
                conditions = _step_conditions(step)
                branch_to = conditions.branch_to if conditions else None
                else_branch_to = conditions.else_branch_to if conditions else None
                for target in (branch_to, else_branch_to):
                    if target is None:
                        continue
                    if target not in existing:
                        raise ValidationError(
                            f"Step {step.step_number} branches to unknown step {target}",
                            {"step_number": step.step_number, "branch_to": target},
                        )
                    if target <= step.step_number:
                        raise ValidationError(
                            f"Step {step.step_number} may only branch forward (got {target})",
                            {"step_number": step.step_number, "branch_to": target},
                        )
                nodes[step.step_number] = StepNode(
                    step_number=step.step_number,
                    group=members,
                    successor=successor,
                    branch_to=branch_to,
                    else_branch_to=else_branch_to,
                )

        return cls(nodes, numbers[0] if numbers else None)

    def node(self, step_number: int) -> StepNode:
        try:
            return self.nodes[step_number]
        except KeyError:
            raise NotFoundError(f"Step {step_number} is not part of this template")

    def group_of(self, step_number: int) -> Tuple[int, ...]:
        return self.node(step_number).group

    def successor_of(self, step_number: int) -> Optional[int]:
        return self.node(step_number).successor


def _is_parallel(step) -> bool:
    return _step_type(step) == StepType.PARALLEL_APPROVAL.value or bool(step.allow_parallel)


def _step_type(step) -> str:
    value = step.step_type
    return value.value if isinstance(value, StepType) else value


def _step_conditions(step) -> Optional[StepConditions]:
    conditions = step.conditions
    if conditions is None or isinstance(conditions, StepConditions):
        return conditions
    return StepConditions.model_validate(conditions)


def parse_trigger_conditions(raw: Optional[dict]) -> Optional[TriggerConditions]:
    if not raw:
        return None
    return TriggerConditions.model_validate(raw)


class TemplateService:
    """Service for authoring and reading workflow templates"""

    def __init__(self, db: Session):
        self.db = db
        self._graphs: Dict[str, StepGraph] = {}

    async def create_template(
        self, data: WorkflowTemplateCreate, company_id: str, created_by: str
    ) -> WorkflowTemplate:
        """Validate and persist a template with its steps"""
        try:
            StepGraph.build(data.steps)

            template = WorkflowTemplate(
                company_id=company_id,
                name=data.name,
                description=data.description,
                entity_type=data.entity_type.value,
                trigger_type=data.trigger_type.value,
                trigger_conditions=(
                    data.trigger_conditions.model_dump(mode="json")
                    if data.trigger_conditions
                    else None
                ),
                priority=data.priority.value,
                is_active=data.is_active,
                escalation_target=(
                    data.escalation_target.model_dump(mode="json")
                    if data.escalation_target
                    else None
                ),
                created_by=created_by,
            )
            template.steps = [self._build_step(step) for step in data.steps]

            self.db.add(template)
            self.db.commit()
            self.db.refresh(template)

            logger.info(
                f"Created workflow template {template.id} '{template.name}' "
                f"with {len(data.steps)} steps"
            )
            return template

        except ApprovalEngineError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"Error creating workflow template: {str(e)}")
            self.db.rollback()
            raise

    async def update_template(
        self,
        template_id: str,
        company_id: str,
        data: WorkflowTemplateUpdate,
        updated_by: str,
    ) -> WorkflowTemplate:
        """Update template metadata; steps may change only before first use"""
        try:
            template = self._get(template_id, company_id)

            if data.steps is not None:
                in_use = (
                    self.db.query(WorkflowInstance)
                    .filter(WorkflowInstance.template_id == template.id)
                    .first()
                )
                if in_use is not None:
                    raise ConflictError(
                        "Template steps are immutable once instances exist",
                        {"template_id": template.id},
                    )
                StepGraph.build(data.steps)

            conditions = data.trigger_conditions
            if conditions is not None or "trigger_conditions" in data.model_fields_set:
                if template.trigger_type in REQUIRES_CONDITIONS and (
                    conditions is None
                    or (conditions.threshold is None and not conditions.field_conditions)
                ):
                    raise ValidationError(
                        f"Trigger type '{template.trigger_type}' requires a threshold "
                        "or at least one field condition"
                    )
                template.trigger_conditions = (
                    conditions.model_dump(mode="json") if conditions else None
                )

            if data.name is not None:
                template.name = data.name
            if data.description is not None:
                template.description = data.description
            if data.priority is not None:
                template.priority = data.priority.value
            if data.is_active is not None:
                template.is_active = data.is_active
            if data.escalation_target is not None:
                template.escalation_target = data.escalation_target.model_dump(mode="json")
            if data.steps is not None:
                for step in list(template.steps):
                    self.db.delete(step)
                self.db.flush()
                template.steps = [self._build_step(step) for step in data.steps]
            template.updated_by = updated_by

            self.db.commit()
            self.db.refresh(template)
            self._graphs.pop(template.id, None)

            logger.info(f"Updated workflow template {template.id}")
            return template

        except ApprovalEngineError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"Error updating workflow template {template_id}: {str(e)}")
            self.db.rollback()
            raise

    async def get_template(self, template_id: str, company_id: str) -> WorkflowTemplate:
        return self._get(template_id, company_id)

    async def list_templates(
        self,
        company_id: str,
        active_only: bool = False,
        trigger_type: Optional[str] = None,
    ) -> List[WorkflowTemplate]:
        query = self.db.query(WorkflowTemplate).filter(
            WorkflowTemplate.company_id == company_id,
            WorkflowTemplate.is_deleted.is_(False),
        )
        if active_only:
            query = query.filter(WorkflowTemplate.is_active.is_(True))
        if trigger_type:
            query = query.filter(WorkflowTemplate.trigger_type == trigger_type)
        return query.order_by(WorkflowTemplate.name).all()

    def find_active_for_trigger(
        self, company_id: str, trigger_type: str, entity_type: str
    ) -> List[WorkflowTemplate]:
        return (
            self.db.query(WorkflowTemplate)
            .filter(
                WorkflowTemplate.company_id == company_id,
                WorkflowTemplate.trigger_type == trigger_type,
                WorkflowTemplate.entity_type == entity_type,
                WorkflowTemplate.is_active.is_(True),
                WorkflowTemplate.is_deleted.is_(False),
            )
            .order_by(WorkflowTemplate.created_at)
            .all()
        )

    def graph_for(self, template: WorkflowTemplate) -> StepGraph:
        graph = self._graphs.get(template.id)
        if graph is None:
            graph = StepGraph.build(template.steps)
            self._graphs[template.id] = graph
        return graph

    def _get(self, template_id: str, company_id: str) -> WorkflowTemplate:
        template = (
            self.db.query(WorkflowTemplate)
            .filter(
                WorkflowTemplate.id == template_id,
                WorkflowTemplate.company_id == company_id,
                WorkflowTemplate.is_deleted.is_(False),
            )
            .first()
        )
        if template is None:
            raise NotFoundError(f"Workflow template {template_id} not found")
        return template

    @staticmethod
    def _build_step(step: WorkflowStepCreate) -> WorkflowStep:
        return WorkflowStep(
            step_number=step.step_number,
            name=step.name,
            description=step.description,
            step_type=step.step_type.value,
            assignee_type=step.assignee_type.value if step.assignee_type else None,
            assignee_ref=step.assignee_ref,
            timeout_days=step.timeout_days,
            is_required=step.is_required,
            allow_parallel=step.allow_parallel,
            all_required=step.all_required,
            conditions=step.conditions.model_dump(mode="json") if step.conditions else None,
            config=step.config,
        )


def validate_template_payload(payload: dict) -> WorkflowTemplateCreate:
    """Parse a raw payload, converting schema errors to ValidationError"""
    try:
        data = WorkflowTemplateCreate.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid workflow template", {"errors": e.errors(include_url=False)}
        )
    StepGraph.build(data.steps)
    return data
