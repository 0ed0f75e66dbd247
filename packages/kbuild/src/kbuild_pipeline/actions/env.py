from __future__ import annotations

from dataclasses import dataclass, field

from .base import ActionContext, ActionOutcome


@dataclass(slots=True)
class EnvAction:
    """
    Set variables and prepend PATH entries without spawning a process.

    Values are expanded against the stage's environment snapshot, so an
    entry may refer to variables set by earlier stages. Entries in
    `path_prepend` keep their order at the front of PATH.
    """

    variables: dict[str, str] = field(default_factory=dict)
    path_prepend: list[str] = field(default_factory=list)

    def describe(self) -> str:
        names = ", ".join(sorted(self.variables)) or "-"
        return f"env set {names}" + (
            f" (+{len(self.path_prepend)} PATH)" if self.path_prepend else ""
        )

    def execute(self, ctx: ActionContext) -> ActionOutcome:
        updates = {k: ctx.expand(v) for k, v in self.variables.items()}
        prepend = [ctx.expand(p) for p in self.path_prepend]
        for k in sorted(updates):
            ctx.logger.debug("env.set", name=k)
        return ActionOutcome(
            exit_code=0,
            env_updates=updates,
            path_prepend=prepend,
            command=self.describe(),
        )
