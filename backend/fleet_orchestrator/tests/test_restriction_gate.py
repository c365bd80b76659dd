from django.test import TestCase

from fleet_orchestrator.errors import QuotaExceeded
from fleet_orchestrator.models import App, Environment
from fleet_orchestrator.restrictions import RestrictionGate
from fleet_orchestrator.tests.factories import (
    create_directive_templates,
    create_machines,
    create_template,
    record_machine_operations,
)


class RestrictionGateTests(TestCase):
    def setUp(self):
        self.app = App.objects.create(name="billing")
        self.prod = Environment.objects.create(app=self.app, name="prod")
        self.staging = Environment.objects.create(app=self.app, name="staging")
        self.step = create_directive_templates(self.app, [False])[0]
        self.prod_machines = create_machines(self.app, 3, environment=self.prod, prefix="prod")
        self.staging_machines = create_machines(self.app, 2, environment=self.staging, prefix="staging")

    def _template(self, limits, name="deploy"):
        return create_template(self.app, [(self.step, False)], name=name, restriction_limits=limits)

    def test_no_restrictions_always_admits(self):
        template = self._template(None)
        record_machine_operations(template, self.prod_machines * 3)
        RestrictionGate(template).check([machine.id for machine in self.prod_machines])

    def test_zero_limit_means_unlimited(self):
        template = self._template({self.prod.id: 0})
        record_machine_operations(template, self.prod_machines)
        RestrictionGate(template).check([self.prod_machines[0].id])

    def test_count_below_limit_admits(self):
        template = self._template({self.prod.id: 3})
        record_machine_operations(template, self.prod_machines[:2])
        RestrictionGate(template).check([self.prod_machines[2].id])

    def test_count_reaching_limit_rejects(self):
        template = self._template({self.prod.id: 3, self.staging.id: 10})
        record_machine_operations(template, self.prod_machines[:2])
        record_machine_operations(template, self.prod_machines[2:])
        with self.assertRaises(QuotaExceeded) as ctx:
            RestrictionGate(template).check([self.staging_machines[0].id])
        self.assertEqual(ctx.exception.environment_id, self.prod.id)
        self.assertEqual(ctx.exception.limit, 3)
        self.assertEqual(ctx.exception.count, 3)

    def test_counts_are_grouped_per_environment(self):
        template = self._template({self.prod.id: 3, self.staging.id: 3})
        record_machine_operations(template, self.prod_machines[:2] + self.staging_machines)
        self.assertEqual(
            RestrictionGate(template).counts_by_environment(),
            {self.prod.id: 2, self.staging.id: 2},
        )
        RestrictionGate(template).check([])

    def test_machines_without_environment_are_exempt(self):
        template = self._template({self.prod.id: 1})
        loose = create_machines(self.app, 4, prefix="loose")
        record_machine_operations(template, loose)
        self.assertEqual(RestrictionGate(template).counts_by_environment(), {})
        RestrictionGate(template).check([machine.id for machine in loose])

    def test_other_templates_are_not_counted(self):
        template = self._template({self.prod.id: 1})
        other = self._template(None, name="rollback")
        record_machine_operations(other, self.prod_machines)
        RestrictionGate(template).check([self.prod_machines[0].id])
