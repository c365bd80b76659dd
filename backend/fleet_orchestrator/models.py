from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from django.core.exceptions import ValidationError
from django.db import models, transaction
from django.db.models import Q

from . import hooks
from .errors import InvalidRestriction

logger = logging.getLogger(__name__)


def _parse_step(item: Any) -> Tuple[int, bool]:
    if isinstance(item, (list, tuple)):
        if len(item) != 2:
            raise ValidationError({"source_ids": f"invalid step: {item!r}"})
        raw_id, raw_flag = item
        flag = raw_flag if isinstance(raw_flag, bool) else str(raw_flag).strip().lower() == "true"
    elif isinstance(item, int):
        raw_id, flag = item, False
    else:
        parts = str(item).strip().split("|")
        raw_id = parts[0]
        flag = len(parts) > 1 and parts[1].strip().lower() == "true"
    try:
        return int(str(raw_id).strip()), flag
    except ValueError:
        raise ValidationError({"source_ids": f"invalid step: {item!r}"})


def encode_steps(source_ids: Iterable[Any]) -> str:
    return ",".join(
        f"{step_id}|{'true' if ignorable else 'false'}" for step_id, ignorable in (_parse_step(item) for item in source_ids)
    )


def decode_steps(expression: str) -> List[Tuple[int, bool]]:
    pairs: List[Tuple[int, bool]] = []
    for item in (expression or "").strip().split(","):
        item = item.strip()
        if not item:
            continue
        raw_id, _, raw_flag = item.partition("|")
        try:
            step_id = int(raw_id.strip())
        except ValueError:
            logger.warning("Skipping malformed step %r", item)
            continue
        pairs.append((step_id, raw_flag.strip().lower() == "true"))
    return pairs


class App(models.Model):
    name = models.CharField(max_length=120, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name


class Environment(models.Model):
    app = models.ForeignKey(App, on_delete=models.CASCADE, related_name="environments")
    name = models.CharField(max_length=120)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]
        unique_together = ("app", "name")

    def __str__(self) -> str:
        return f"{self.app.name}/{self.name}"


class MachineQuerySet(models.QuerySet):
    def available_to(self, user, app, template_id: Optional[int] = None) -> "MachineQuerySet":
        if user is None or not getattr(user, "is_authenticated", False):
            return self.none()
        scope = Q(grants__operation_template__isnull=True)
        if template_id is not None:
            scope |= Q(grants__operation_template_id=template_id)
        return self.filter(Q(grants__user=user) & scope, app=app).distinct()


class Machine(models.Model):
    app = models.ForeignKey(App, on_delete=models.CASCADE, related_name="machines")
    hostname = models.CharField(max_length=255)
    environment = models.ForeignKey(
        Environment, null=True, blank=True, on_delete=models.SET_NULL, related_name="machines"
    )
    created_at = models.DateTimeField(auto_now_add=True)

    objects = MachineQuerySet.as_manager()

    class Meta:
        ordering = ["id"]

    def __str__(self) -> str:
        return self.hostname


class DirectiveTemplate(models.Model):
    app = models.ForeignKey(App, on_delete=models.CASCADE, related_name="directive_templates")
    name = models.CharField(max_length=200)
    command = models.TextField(blank=True)
    pluggable = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name

    def make_directives(
        self,
        info: "DirectiveInfo",
        app: App,
        machines: Iterable["Machine"],
        on_directive: Optional[Callable[[int, "Directive"], None]] = None,
    ) -> Dict[int, "Directive"]:
        produced: Dict[int, Directive] = {}
        for machine in machines:
            if machine.app_id != app.id:
                logger.warning("Machine %s is not part of app %s; no directive created", machine.id, app.id)
                continue
            directive = Directive.objects.create(
                operation_id=info.operation_id,
                machine=machine,
                directive_template=self,
                step_index=info.step_index,
                pluggable=self.pluggable,
                ignorable_on_failure=info.ignorable_on_failure,
                state=info.initial_state,
            )
            produced[machine.id] = directive
            if on_directive is not None:
                on_directive(machine.id, directive)
        return produced


@dataclass(frozen=True)
class DirectiveInfo:
    operation_id: int
    step_index: int
    ignorable_on_failure: bool
    initial_state: str = "hold"


class OperationTemplate(models.Model):
    app = models.ForeignKey(App, on_delete=models.CASCADE, related_name="operation_templates")
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    expression = models.TextField(blank=True)
    pre_admission_hook = models.CharField(max_length=120, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    # Transient inputs, applied by save().
    source_ids: Optional[List[Any]] = None
    restriction_limits: Optional[Dict[Any, Any]] = None

    class Meta:
        ordering = ["name"]
        unique_together = ("app", "name")

    def __str__(self) -> str:
        return self.name

    def validate_for_save(self) -> None:
        errors: Dict[str, str] = {}
        if not (self.name or "").strip():
            errors["name"] = "This field is required."
        elif (
            OperationTemplate.objects.filter(app_id=self.app_id, name=self.name).exclude(pk=self.pk).exists()
        ):
            errors["name"] = "An operation template with this name already exists for the app."
        if self.source_ids is not None:
            if len(list(self.source_ids)) == 0:
                errors["source_ids"] = "At least one step is required."
        elif self._state.adding and not decode_steps(self.expression):
            errors["source_ids"] = "At least one step is required."
        if self.pre_admission_hook and not hooks.is_registered(self.pre_admission_hook):
            errors["pre_admission_hook"] = f"Unknown pre-admission hook: {self.pre_admission_hook}"
        if errors:
            raise ValidationError(errors)

    def save(self, *args, **kwargs):
        with transaction.atomic():
            self.validate_for_save()
            if self.source_ids is not None:
                self.expression = encode_steps(self.source_ids)
            super().save(*args, **kwargs)
            self.update_restrictions()

    def _resolve_environment(self, key: Any) -> Environment:
        if isinstance(key, Environment):
            if key.app_id != self.app_id:
                raise InvalidRestriction(f"environment {key.pk} does not belong to app {self.app_id}")
            return key
        try:
            env_id = int(key)
        except (TypeError, ValueError):
            raise InvalidRestriction(f"invalid environment: {key!r}")
        environment = Environment.objects.filter(app_id=self.app_id, pk=env_id).first()
        if environment is None:
            raise InvalidRestriction(f"environment {env_id} does not belong to app {self.app_id}")
        return environment

    def update_restrictions(self, limits: Optional[Dict[Any, Any]] = None) -> List["OperationRestriction"]:
        limits = self.restriction_limits if limits is None else limits
        if limits is None:
            return []
        resolved: List[Tuple[Environment, int]] = []
        for key, value in limits.items():
            try:
                limit = int(value)
            except (TypeError, ValueError):
                raise InvalidRestriction(f"limit must be an integer: {value!r}")
            if limit < 0:
                raise InvalidRestriction("limit cannot be negative")
            resolved.append((self._resolve_environment(key), limit))

        restrictions: List[OperationRestriction] = []
        with transaction.atomic():
            for environment, limit in resolved:
                restriction = self.restrictions.by_environment(environment)
                if restriction is None:
                    restriction = self.restrictions.create(environment=environment, limit=limit, limit_cycle="W")
                elif restriction.limit != limit:
                    restriction.limit = limit
                    restriction.save(update_fields=["limit", "updated_at"])
                restrictions.append(restriction)
        return restrictions

    def step_pairs(self) -> List[Tuple[int, bool]]:
        return decode_steps(self.expression)

    def directive_steps(self) -> List[Tuple[DirectiveTemplate, bool]]:
        pairs = self.step_pairs()
        templates = DirectiveTemplate.objects.in_bulk({step_id for step_id, _ in pairs})
        return [(templates[step_id], ignorable) for step_id, ignorable in pairs if step_id in templates]


class RestrictionQuerySet(models.QuerySet):
    def by_id(self, restriction_id: int) -> Optional["OperationRestriction"]:
        return self.filter(pk=restriction_id).first()

    def by_environment(self, environment) -> Optional["OperationRestriction"]:
        environment_id = getattr(environment, "pk", environment)
        return self.filter(environment_id=environment_id).first()


class OperationRestriction(models.Model):
    CYCLE_CHOICES = [
        ("D", "Daily"),
        ("W", "Weekly"),
        ("M", "Monthly"),
    ]

    operation_template = models.ForeignKey(
        OperationTemplate, on_delete=models.CASCADE, related_name="restrictions"
    )
    environment = models.ForeignKey(Environment, on_delete=models.CASCADE, related_name="restrictions")
    limit = models.PositiveIntegerField(default=0)
    limit_cycle = models.CharField(max_length=1, choices=CYCLE_CHOICES, default="W")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = RestrictionQuerySet.as_manager()

    class Meta:
        unique_together = ("operation_template", "environment")

    def __str__(self) -> str:
        return f"{self.operation_template.name} @ {self.environment.name}: {self.limit or 'unlimited'}"


class Operation(models.Model):
    STATE_CHOICES = [
        ("init", "Init"),
        ("wait", "Wait"),
        ("hold", "Hold"),
        ("enabled", "Enabled"),
        ("done", "Done"),
        ("failed", "Failed"),
    ]
    EVENTS_BY_STATE = {
        "init": ["enable"],
        "wait": ["enable"],
        "hold": ["enable"],
        "enabled": ["complete", "fail"],
    }

    operator = models.ForeignKey(
        "auth.User", null=True, blank=True, on_delete=models.SET_NULL, related_name="operations"
    )
    name = models.CharField(max_length=200)
    app = models.ForeignKey(App, on_delete=models.CASCADE, related_name="operations")
    operation_template = models.ForeignKey(
        OperationTemplate, on_delete=models.CASCADE, related_name="operations"
    )
    state = models.CharField(max_length=20, choices=STATE_CHOICES, default="init")
    previous_id = models.PositiveBigIntegerField(null=True, blank=True, db_index=True)
    job_id = models.CharField(max_length=100, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self) -> str:
        return f"{self.name} #{self.pk} ({self.state})"

    def predecessor(self) -> Optional["Operation"]:
        if self.previous_id is None:
            return None
        return Operation.objects.filter(pk=self.previous_id).first()

    def successor(self) -> Optional["Operation"]:
        return Operation.objects.filter(previous_id=self.pk).order_by("id").first()

    def top_directives(self) -> models.QuerySet:
        linked_ids = self.directives.filter(next_id__isnull=False).values("next_id")
        return self.directives.filter(pre_id__isnull=True).exclude(id__in=linked_ids)

    def available_events(self) -> List[str]:
        return list(self.EVENTS_BY_STATE.get(self.state, []))

    def enable(self) -> bool:
        if self.state not in ("init", "wait", "hold"):
            return False
        with transaction.atomic():
            self.state = "enabled"
            self.save(update_fields=["state", "updated_at"])
            for directive in self.top_directives().filter(state="hold"):
                directive.enable()
        logger.info("Operation %s enabled", self.pk)
        return True

    def complete(self, succeeded: bool = True) -> Optional["Operation"]:
        self.state = "done" if succeeded else "failed"
        self.save(update_fields=["state", "updated_at"])
        if not succeeded:
            logger.warning("Operation %s failed; successors stay on hold", self.pk)
            return None
        successor = self.successor()
        if successor is not None and successor.state == "wait":
            successor.enable()
        return successor

    def fire_event(self, event: str) -> None:
        if event not in self.available_events():
            raise ValueError(f"event {event!r} is not available in state {self.state!r}")
        if event == "enable":
            self.enable()
        elif event == "complete":
            self.complete(succeeded=True)
        elif event == "fail":
            self.complete(succeeded=False)


class MachineOperation(models.Model):
    machine = models.ForeignKey(Machine, on_delete=models.CASCADE, related_name="machine_operations")
    operation = models.ForeignKey(Operation, on_delete=models.CASCADE, related_name="machine_operations")
    operation_template = models.ForeignKey(
        OperationTemplate, on_delete=models.CASCADE, related_name="machine_operations"
    )
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"{self.machine_id} in operation {self.operation_id}"


class Directive(models.Model):
    STATE_CHOICES = [
        ("hold", "Hold"),
        ("enabled", "Enabled"),
        ("running", "Running"),
        ("succeeded", "Succeeded"),
        ("failed", "Failed"),
    ]

    operation = models.ForeignKey(Operation, on_delete=models.CASCADE, related_name="directives")
    machine = models.ForeignKey(Machine, on_delete=models.CASCADE, related_name="directives")
    directive_template = models.ForeignKey(
        DirectiveTemplate, null=True, blank=True, on_delete=models.SET_NULL, related_name="directives"
    )
    step_index = models.PositiveIntegerField()
    pluggable = models.BooleanField(default=False)
    ignorable_on_failure = models.BooleanField(default=False)
    state = models.CharField(max_length=20, choices=STATE_CHOICES, default="hold")
    pre_id = models.PositiveBigIntegerField(null=True, blank=True, db_index=True)
    next_id = models.PositiveBigIntegerField(null=True, blank=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["operation_id", "machine_id", "step_index"]

    def __str__(self) -> str:
        return f"Directive {self.pk} step {self.step_index} on machine {self.machine_id}"

    def enable(self) -> bool:
        if self.state != "hold":
            return False
        self.state = "enabled"
        self.save(update_fields=["state", "updated_at"])
        return True


class MachineGrant(models.Model):
    """Allows a user to operate a machine, for one template or for all of them."""

    user = models.ForeignKey("auth.User", on_delete=models.CASCADE, related_name="machine_grants")
    machine = models.ForeignKey(Machine, on_delete=models.CASCADE, related_name="grants")
    operation_template = models.ForeignKey(
        OperationTemplate, null=True, blank=True, on_delete=models.CASCADE, related_name="machine_grants"
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ("user", "machine", "operation_template")

    def __str__(self) -> str:
        scope = self.operation_template.name if self.operation_template_id else "all templates"
        return f"{self.user} -> {self.machine} ({scope})"
