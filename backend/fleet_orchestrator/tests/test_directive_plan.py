from types import SimpleNamespace
from typing import List

from django.test import TestCase

from fleet_orchestrator.directives import ChainLinker, DirectivePlanBuilder
from fleet_orchestrator.models import App, Directive, DirectiveInfo, Operation
from fleet_orchestrator.tests.factories import create_directive_templates, create_machines, create_template


def _walk_chain(head: Directive) -> List[Directive]:
    """Follow next_id links, and pre_id back-links pointing at the current node."""
    chain = [head]
    current = head
    while True:
        following = None
        if current.next_id:
            following = Directive.objects.get(pk=current.next_id)
        else:
            following = Directive.objects.filter(pre_id=current.id).first()
        if following is None:
            return chain
        chain.append(following)
        current = following


class ChainLinkerTests(TestCase):
    def _directive(self, pk, pluggable):
        saved = []
        directive = SimpleNamespace(id=pk, pluggable=pluggable, pre_id=None, next_id=None)
        directive.save = lambda update_fields=None: saved.append(update_fields)
        directive.saved = saved
        return directive

    def test_first_directive_per_machine_is_a_head(self):
        linker = ChainLinker()
        first = self._directive(1, False)
        second = self._directive(2, False)
        linker.link(10, first)
        linker.link(11, second)
        self.assertEqual(linker.heads, [first, second])

    def test_pluggable_then_mandatory_anchors_back(self):
        linker = ChainLinker()
        predecessor = self._directive(1, True)
        current = self._directive(2, False)
        linker.link(10, predecessor)
        linker.link(10, current)
        self.assertEqual(current.pre_id, 1)
        self.assertIsNone(predecessor.next_id)
        self.assertEqual(current.saved, [["pre_id", "updated_at"]])

    def test_other_combinations_link_forward(self):
        for predecessor_pluggable, current_pluggable in [(False, False), (False, True), (True, True)]:
            linker = ChainLinker()
            predecessor = self._directive(1, predecessor_pluggable)
            current = self._directive(2, current_pluggable)
            linker.link(10, predecessor)
            linker.link(10, current)
            self.assertEqual(predecessor.next_id, 2)
            self.assertIsNone(current.pre_id)
            self.assertEqual(linker.heads, [predecessor])


class DirectivePlanBuilderTests(TestCase):
    def setUp(self):
        self.app = App.objects.create(name="billing")
        self.machines = create_machines(self.app, 2)

    def _operation(self, template):
        return Operation.objects.create(name=template.name, app=self.app, operation_template=template)

    def test_mixed_pluggable_steps_link_per_rule(self):
        steps = create_directive_templates(self.app, [False, True, False, True])
        template = create_template(self.app, [(step, False) for step in steps])
        operation = self._operation(template)

        heads = DirectivePlanBuilder(template).build(operation, self.machines, hold=False)

        self.assertEqual(Directive.objects.filter(operation=operation).count(), 8)
        self.assertEqual(sorted(head.machine_id for head in heads), sorted(m.id for m in self.machines))
        for machine in self.machines:
            a, b, c, d = Directive.objects.filter(operation=operation, machine=machine).order_by("step_index")
            self.assertEqual(a.next_id, b.id)
            self.assertIsNone(b.next_id)
            self.assertEqual(c.pre_id, b.id)
            self.assertEqual(c.next_id, d.id)
            self.assertIsNone(d.pre_id)
            self.assertEqual([node.id for node in _walk_chain(a)], [a.id, b.id, c.id, d.id])
            self.assertEqual(a.state, "enabled")
            self.assertEqual({b.state, c.state, d.state}, {"hold"})
        self.assertEqual(
            sorted(operation.top_directives().values_list("id", flat=True)),
            sorted(head.id for head in heads),
        )

    def test_pluggable_head_is_enabled_even_when_successor_anchors_back(self):
        steps = create_directive_templates(self.app, [True, False])
        template = create_template(self.app, [(steps[0], True), (steps[1], False)])
        operation = self._operation(template)

        DirectivePlanBuilder(template).build(operation, self.machines[:1], hold=False)

        first, second = Directive.objects.filter(operation=operation).order_by("step_index")
        self.assertEqual(second.pre_id, first.id)
        self.assertTrue(first.ignorable_on_failure)
        self.assertFalse(second.ignorable_on_failure)
        self.assertEqual(first.state, "enabled")
        self.assertEqual(second.state, "hold")

    def test_hold_leaves_every_directive_on_hold(self):
        steps = create_directive_templates(self.app, [False, False])
        template = create_template(self.app, [(step, False) for step in steps])
        operation = self._operation(template)

        DirectivePlanBuilder(template).build(operation, self.machines, hold=True)

        self.assertEqual(set(Directive.objects.values_list("state", flat=True)), {"hold"})

    def test_chain_has_one_node_per_step(self):
        for length in (2, 3, 5):
            steps = create_directive_templates(self.app, [index % 2 == 1 for index in range(length)])
            template = create_template(self.app, [(step, False) for step in steps], name=f"chain-{length}")
            operation = self._operation(template)
            heads = DirectivePlanBuilder(template).build(operation, self.machines[:1], hold=True)
            self.assertEqual(len(heads), 1)
            chain = _walk_chain(Directive.objects.get(pk=heads[0].pk))
            self.assertEqual([node.step_index for node in chain], list(range(length)))

    def test_factory_skips_machines_from_other_apps(self):
        step = create_directive_templates(self.app, [False])[0]
        template = create_template(self.app, [(step, False)])
        operation = self._operation(template)
        stranger = create_machines(App.objects.create(name="search"), 1)[0]
        seen = []

        with self.assertLogs("fleet_orchestrator.models", level="WARNING"):
            produced = step.make_directives(
                DirectiveInfo(operation_id=operation.id, step_index=0, ignorable_on_failure=False),
                self.app,
                [self.machines[0], stranger],
                on_directive=lambda machine_id, directive: seen.append(machine_id),
            )

        self.assertEqual(list(produced), [self.machines[0].id])
        self.assertEqual(seen, [self.machines[0].id])
        self.assertEqual(produced[self.machines[0].id].state, "hold")
