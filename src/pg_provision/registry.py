"""Ordered registry of provisioning steps."""
from __future__ import annotations

from typing import Iterator, Optional

from .models import BackupTarget, ProvisioningStep, StepAction, StepRollback

ORDINAL_STEP = 10


class StepRegistry:
    """Holds steps by name; iteration always follows ordinal order."""

    def __init__(self, name: str = "default") -> None:
        self.name = name
        self._steps: dict[str, ProvisioningStep] = {}

    def register(self, step: ProvisioningStep) -> ProvisioningStep:
        if step.name in self._steps:
            raise ValueError(f"Step '{step.name}' is already registered")
        for existing in self._steps.values():
            if existing.ordinal == step.ordinal:
                raise ValueError(
                    f"Step '{step.name}' reuses ordinal {step.ordinal} of step '{existing.name}'"
                )
        self._steps[step.name] = step
        return step

    def add(
        self,
        name: str,
        action: StepAction,
        *,
        ordinal: Optional[int] = None,
        mandatory: bool = True,
        rollback: Optional[StepRollback] = None,
        backups: tuple[BackupTarget, ...] = (),
        depends_on: tuple[str, ...] = (),
        description: str = "",
    ) -> ProvisioningStep:
        if ordinal is None:
            ordinal = max((step.ordinal for step in self._steps.values()), default=0) + ORDINAL_STEP
        return self.register(
            ProvisioningStep(
                name=name,
                ordinal=ordinal,
                action=action,
                mandatory=mandatory,
                rollback=rollback,
                backups=backups,
                depends_on=depends_on,
                description=description,
            )
        )

    def get(self, name: str) -> ProvisioningStep:
        return self._steps[name]

    def ordered(self) -> list[ProvisioningStep]:
        """Return steps by ordinal after checking every dependency runs earlier."""
        steps = sorted(self._steps.values(), key=lambda step: step.ordinal)
        position = {step.name: index for index, step in enumerate(steps)}
        for index, step in enumerate(steps):
            for dependency in step.depends_on:
                if dependency not in position:
                    raise ValueError(f"Step '{step.name}' depends on unknown step '{dependency}'")
                if position[dependency] >= index:
                    raise ValueError(f"Step '{step.name}' must come after its dependency '{dependency}'")
        return steps

    def names(self) -> list[str]:
        return [step.name for step in self.ordered()]

    def __iter__(self) -> Iterator[ProvisioningStep]:
        return iter(self.ordered())

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, name: object) -> bool:
        return name in self._steps
