from django.apps import AppConfig


class FleetOrchestratorConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "fleet_orchestrator"
    label = "fleet_orchestrator"

    def ready(self) -> None:
        # Built-in pre-admission hooks register themselves on import.
        from fleet_orchestrator import hooks  # noqa: F401
