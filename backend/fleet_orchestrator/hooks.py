"""Pre-admission hooks.

A template may name one hook. The hook runs before any record is created for
the first operation of a chain, and may raise to stop the admission.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionContext:
    template: Any
    requester: Any
    machine_ids: List[int] = field(default_factory=list)


PreAdmissionHook = Callable[[AdmissionContext], None]

_HOOKS: Dict[str, PreAdmissionHook] = {}


def register_pre_admission_hook(name: str) -> Callable[[PreAdmissionHook], PreAdmissionHook]:
    def decorator(func: PreAdmissionHook) -> PreAdmissionHook:
        if name in _HOOKS and _HOOKS[name] is not func:
            raise ValueError(f"pre-admission hook already registered: {name}")
        _HOOKS[name] = func
        return func

    return decorator


def unregister_pre_admission_hook(name: str) -> None:
    _HOOKS.pop(name, None)


def is_registered(name: str) -> bool:
    return name in _HOOKS


def registered_hook_names() -> List[str]:
    return sorted(_HOOKS)


def run_pre_admission_hook(name: str, context: AdmissionContext) -> None:
    if not name:
        return
    hook = _HOOKS.get(name)
    if hook is None:
        raise LookupError(f"pre-admission hook not registered: {name}")
    logger.info(
        "Running pre-admission hook %s for template %s",
        name,
        getattr(context.template, "id", None),
        extra={"machine_count": len(context.machine_ids)},
    )
    hook(context)


@register_pre_admission_hook("log_admission")
def log_admission(context: AdmissionContext) -> None:
    logger.info(
        "Admission requested by %s on template %s for machines %s",
        getattr(context.requester, "username", context.requester),
        getattr(context.template, "name", context.template),
        ",".join(str(machine_id) for machine_id in context.machine_ids),
    )
