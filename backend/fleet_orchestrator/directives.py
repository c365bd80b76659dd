from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from django.db import transaction

from .models import Directive, DirectiveInfo, Machine, Operation, OperationTemplate

logger = logging.getLogger(__name__)


class ChainLinker:
    """Links the directives of one machine into a chain as they are produced.

    A directive is linked to the latest directive already seen for the same
    machine. When that predecessor is pluggable and the new directive is not,
    the new directive anchors back to it through ``pre_id``; in every other
    case the predecessor points forward through ``next_id``. A directive with
    no predecessor starts its machine's chain.
    """

    def __init__(self) -> None:
        self.heads: List[Directive] = []
        self._latest: Dict[int, Directive] = {}

    def link(self, machine_id: int, directive: Directive) -> None:
        predecessor = self._latest.get(machine_id)
        self._latest[machine_id] = directive
        if predecessor is None:
            self.heads.append(directive)
            return
        if predecessor.pluggable and not directive.pluggable:
            directive.pre_id = predecessor.id
            directive.save(update_fields=["pre_id", "updated_at"])
        else:
            predecessor.next_id = directive.id
            predecessor.save(update_fields=["next_id", "updated_at"])


class DirectivePlanBuilder:
    def __init__(self, template: OperationTemplate):
        self.template = template

    def build(self, operation: Operation, machines: Iterable[Machine], hold: bool) -> List[Directive]:
        machines = list(machines)
        linker = ChainLinker()
        with transaction.atomic():
            for index, (directive_template, ignorable) in enumerate(self.template.directive_steps()):
                info = DirectiveInfo(
                    operation_id=operation.id,
                    step_index=index,
                    ignorable_on_failure=ignorable,
                    initial_state="hold",
                )
                directive_template.make_directives(info, self.template.app, machines, on_directive=linker.link)
            if not hold:
                for directive in linker.heads:
                    directive.enable()
        logger.info(
            "Built directive plan for operation %s: %s machines, %s chains, hold=%s",
            operation.id,
            len(machines),
            len(linker.heads),
            hold,
        )
        return linker.heads
