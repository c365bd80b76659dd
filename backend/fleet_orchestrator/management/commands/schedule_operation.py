from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError

from fleet_orchestrator.admission import GroupScheduler, HoldMode, OperationAdmitter
from fleet_orchestrator.errors import AdmissionError
from fleet_orchestrator.models import OperationTemplate


class Command(BaseCommand):
    help = "Admit an operation, or a chain of grouped operations, for an operation template."

    def add_arguments(self, parser):
        parser.add_argument("--template", type=int, required=True)
        parser.add_argument("--username", required=True)
        parser.add_argument("--machines", default="", help="Comma separated machine ids.")
        parser.add_argument("--groups", type=int, default=0, help="Split the machines into this many chained groups.")
        parser.add_argument("--previous-id", type=int, default=None)
        hold = parser.add_mutually_exclusive_group()
        hold.add_argument("--hold", dest="hold", action="store_true", default=None)
        hold.add_argument("--no-hold", dest="hold", action="store_false")

    def handle(self, *args, **options):
        template = OperationTemplate.objects.filter(id=options["template"]).first()
        if not template:
            raise CommandError(f"OperationTemplate {options['template']} not found.")
        user = get_user_model().objects.filter(username=options["username"]).first()
        if not user:
            raise CommandError(f"User {options['username']} not found.")
        try:
            machine_ids = [int(item) for item in options["machines"].split(",") if item.strip()]
        except ValueError:
            raise CommandError("--machines must be a comma separated list of ids.")

        try:
            if options["groups"]:
                operations = GroupScheduler(template).schedule(
                    user,
                    options["groups"],
                    hold_mode=HoldMode.from_flag(options["hold"] or False),
                    machine_ids=machine_ids or None,
                )
            else:
                if not machine_ids:
                    raise CommandError("--machines is required unless --groups is given.")
                operations = [
                    OperationAdmitter(template).admit(
                        user,
                        machine_ids,
                        previous_id=options["previous_id"],
                        hold_mode=HoldMode.from_flag(options["hold"]),
                    )
                ]
        except AdmissionError as exc:
            raise CommandError(exc.reason)

        for operation in operations:
            self.stdout.write(f"Operation {operation.id} state={operation.state} previous={operation.previous_id}")
