from unittest import mock

from django.test import TestCase, override_settings

from fleet_orchestrator.admission import HoldMode, OperationAdmitter
from fleet_orchestrator.dispatch import INVOKE_OPERATION_TASK, AsyncDispatcher
from fleet_orchestrator.models import App, Operation
from fleet_orchestrator.tests.factories import (
    create_directive_templates,
    create_machines,
    create_template,
    create_user,
    grant,
)
from fleet_orchestrator.worker import main
from fleet_orchestrator.worker_tasks import invoke_operation

EXECUTED = []


def record_execution(operation, machine_ids, should_run_now):
    EXECUTED.append((operation.id, list(machine_ids), should_run_now))


class DispatchTests(TestCase):
    @override_settings(FLEETPLAN_ASYNC_JOBS_MODE="redis")
    @mock.patch("fleet_orchestrator.dispatch._enqueue_job", return_value="job-123")
    def test_redis_mode_enqueues_invoke_task(self, enqueue):
        job_id = AsyncDispatcher().dispatch(7, (1, 2), True)
        self.assertEqual(job_id, "job-123")
        enqueue.assert_called_once_with(INVOKE_OPERATION_TASK, 7, [1, 2], True)

    @override_settings(FLEETPLAN_ASYNC_JOBS_MODE="inprocess")
    @mock.patch("fleet_orchestrator.worker_tasks.invoke_operation")
    def test_inprocess_mode_invokes_directly(self, invoke):
        job_id = AsyncDispatcher().dispatch(7, [3], False)
        self.assertEqual(job_id, "")
        invoke.assert_called_once_with(7, [3], False)


class InvokeOperationTests(TestCase):
    def setUp(self):
        EXECUTED.clear()
        self.app = App.objects.create(name="billing")
        self.user = create_user()
        self.machines = create_machines(self.app, 2)
        grant(self.user, self.machines)
        step = create_directive_templates(self.app, [False])[0]
        self.template = create_template(self.app, [(step, False)])

    def test_missing_operation_is_logged(self):
        with self.assertLogs("fleet_orchestrator.worker_tasks", level="WARNING"):
            invoke_operation(999, [1], True)

    def test_without_executor_operation_is_left_for_pickup(self):
        operation = Operation.objects.create(name="deploy", app=self.app, operation_template=self.template)
        with self.assertLogs("fleet_orchestrator.worker_tasks", level="INFO") as logs:
            invoke_operation(operation.id, [self.machines[0].id], False)
        self.assertIn("left for pickup", logs.output[0])
        self.assertEqual(EXECUTED, [])

    @override_settings(FLEETPLAN_DIRECTIVE_EXECUTOR="fleet_orchestrator.tests.test_worker_tasks.record_execution")
    def test_admission_reaches_configured_executor(self):
        machine_ids = [machine.id for machine in self.machines]
        with self.captureOnCommitCallbacks(execute=True):
            operation = OperationAdmitter(self.template).admit(self.user, machine_ids, hold_mode=HoldMode.RELEASE)
        self.assertEqual(EXECUTED, [(operation.id, machine_ids, True)])
        operation.refresh_from_db()
        self.assertEqual(operation.job_id, "")


class WorkerTests(TestCase):
    @override_settings(FLEETPLAN_JOBS_REDIS_URL="redis://jobs:6379/3")
    @mock.patch("fleet_orchestrator.worker.Worker")
    @mock.patch("fleet_orchestrator.worker.redis.Redis.from_url")
    @mock.patch("fleet_orchestrator.worker.django.setup")
    def test_worker_uses_configured_redis_url(self, setup, from_url, worker_cls):
        main()
        setup.assert_called_once_with()
        from_url.assert_called_once_with("redis://jobs:6379/3")
        worker_cls.assert_called_once_with(["default"], connection=from_url.return_value)
        worker_cls.return_value.work.assert_called_once_with()
