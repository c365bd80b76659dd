from __future__ import annotations

import enum
import logging
import math
from functools import partial
from typing import Iterable, List, Optional, Sequence

from django.db import transaction

from .directives import DirectivePlanBuilder
from .dispatch import AsyncDispatcher
from .errors import AdmissionError, NoPermittedMachines
from .hooks import AdmissionContext, run_pre_admission_hook
from .models import Machine, MachineOperation, Operation, OperationTemplate
from .restrictions import RestrictionGate

logger = logging.getLogger(__name__)


class HoldMode(enum.Enum):
    """How a new operation starts: paused, queued behind a chain, or unspecified."""

    HOLD = "hold"
    RELEASE = "wait"
    UNSPECIFIED = "init"

    @property
    def operation_state(self) -> str:
        return self.value

    @classmethod
    def from_flag(cls, hold: Optional[bool]) -> "HoldMode":
        if hold is None:
            return cls.UNSPECIFIED
        return cls.HOLD if hold else cls.RELEASE


def available_machine_ids(user, template: OperationTemplate) -> List[int]:
    return list(
        Machine.objects.available_to(user, template.app, template.id).order_by("id").values_list("id", flat=True)
    )


def make_groups(machine_ids: Sequence[int], group_count: int) -> List[List[int]]:
    if group_count < 1:
        raise ValueError("group_count must be at least 1")
    machine_ids = list(machine_ids)
    if not machine_ids:
        return []
    group_size = math.ceil(len(machine_ids) / group_count)
    return [machine_ids[start : start + group_size] for start in range(0, len(machine_ids), group_size)]


class OperationAdmitter:
    def __init__(
        self,
        template: OperationTemplate,
        *,
        dispatcher: Optional[AsyncDispatcher] = None,
        plan_builder: Optional[DirectivePlanBuilder] = None,
    ):
        self.template = template
        self.dispatcher = dispatcher or AsyncDispatcher()
        self.plan_builder = plan_builder or DirectivePlanBuilder(template)

    def permitted_machine_ids(self, requester, machine_ids: Iterable[int]) -> List[int]:
        available = set(available_machine_ids(requester, self.template))
        admitted: List[int] = []
        for machine_id in machine_ids:
            machine_id = int(machine_id)
            if machine_id in available and machine_id not in admitted:
                admitted.append(machine_id)
        return admitted

    def admit(
        self,
        requester,
        machine_ids: Iterable[int],
        *,
        previous_id: Optional[int] = None,
        hold_mode: HoldMode = HoldMode.UNSPECIFIED,
    ) -> Operation:
        template = self.template
        admitted = self.permitted_machine_ids(requester, machine_ids)
        if not admitted:
            logger.info("Rejected admission on template %s: no permitted machines", template.pk)
            raise NoPermittedMachines()

        RestrictionGate(template).check(admitted)

        if template.pre_admission_hook and previous_id is None:
            run_pre_admission_hook(
                template.pre_admission_hook,
                AdmissionContext(template=template, requester=requester, machine_ids=admitted),
            )

        state = hold_mode.operation_state
        # Operations queued behind a predecessor keep their plan held until it completes.
        hold_plan = hold_mode is HoldMode.HOLD or previous_id is not None

        with transaction.atomic():
            operation = Operation.objects.create(
                operator=requester,
                name=template.name,
                app=template.app,
                operation_template=template,
                previous_id=previous_id,
                state=state,
            )
            MachineOperation.objects.bulk_create(
                [
                    MachineOperation(machine_id=machine_id, operation=operation, operation_template=template)
                    for machine_id in admitted
                ]
            )
            machines = Machine.objects.in_bulk(admitted)
            self.plan_builder.build(operation, [machines[machine_id] for machine_id in admitted], hold=hold_plan)
            transaction.on_commit(partial(self._dispatch, operation.id, admitted, state != "init"))

        logger.info(
            "Admitted operation %s on template %s for %s machines (state=%s, previous=%s)",
            operation.id,
            template.pk,
            len(admitted),
            state,
            previous_id,
        )
        return operation

    def _dispatch(self, operation_id: int, machine_ids: List[int], should_run_now: bool) -> None:
        job_id = self.dispatcher.dispatch(operation_id, machine_ids, should_run_now)
        if job_id:
            Operation.objects.filter(pk=operation_id).update(job_id=job_id)


class GroupScheduler:
    """Admits a machine set as a chain of operations, one per group.

    Groups already admitted are kept when a later group is rejected.
    """

    def __init__(self, template: OperationTemplate, *, admitter: Optional[OperationAdmitter] = None):
        self.template = template
        self.admitter = admitter or OperationAdmitter(template)

    def schedule(
        self,
        requester,
        group_count: int,
        *,
        hold_mode: HoldMode = HoldMode.RELEASE,
        machine_ids: Optional[Sequence[int]] = None,
    ) -> List[Operation]:
        if machine_ids is None:
            machine_ids = available_machine_ids(requester, self.template)
        groups = make_groups(machine_ids, group_count)
        if not groups:
            raise NoPermittedMachines()

        operations: List[Operation] = []
        previous_id: Optional[int] = None
        for index, group in enumerate(groups):
            try:
                operation = self.admitter.admit(requester, group, previous_id=previous_id, hold_mode=hold_mode)
            except AdmissionError as exc:
                logger.warning(
                    "Group %s/%s on template %s rejected (%s); %s earlier operation(s) remain admitted",
                    index + 1,
                    len(groups),
                    self.template.pk,
                    exc.reason,
                    len(operations),
                )
                raise
            operations.append(operation)
            previous_id = operation.id

        operations[0].enable()
        return operations
