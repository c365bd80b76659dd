"""Per-environment operation quotas.

The gate counts MachineOperation rows already committed for a template. It
does not reserve capacity, so two admissions running at the same time can both
pass and together go over a limit.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable

from django.db.models import Count

from .errors import QuotaExceeded
from .models import MachineOperation, OperationTemplate

logger = logging.getLogger(__name__)


class RestrictionGate:
    def __init__(self, template: OperationTemplate):
        self.template = template

    def limits_by_environment(self) -> Dict[int, int]:
        return {
            restriction.environment_id: restriction.limit
            for restriction in self.template.restrictions.all()
        }

    def counts_by_environment(self) -> Dict[int, int]:
        rows = (
            MachineOperation.objects.filter(
                operation_template=self.template,
                machine__environment__isnull=False,
            )
            .values("machine__environment_id")
            .annotate(count=Count("id"))
        )
        return {row["machine__environment_id"]: row["count"] for row in rows}

    def check(self, candidate_machine_ids: Iterable[int] = ()) -> None:
        limits = self.limits_by_environment()
        if not any(limits.values()):
            return
        for environment_id, count in self.counts_by_environment().items():
            limit = limits.get(environment_id)
            if limit and limit > 0 and count >= limit:
                logger.info(
                    "Quota reached for template %s in environment %s (%s/%s)",
                    self.template.pk,
                    environment_id,
                    count,
                    limit,
                )
                raise QuotaExceeded(environment_id, limit, count)
