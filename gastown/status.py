"""
Town status snapshot.

build_status() reads hooks, rigs, convoys and molecules once and returns a
pydantic TownStatus, which `gt status --json` dumps as-is for dashboards.
format_status() renders the same snapshot as plain text.
"""

from collections import Counter
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from gastown.lib.errors import InfrastructureError
from gastown.lib.types import HookState

if TYPE_CHECKING:
    from gastown.town import Town


class HookSummary(BaseModel):
    id: str
    rig_id: str
    state: str
    agent_binding: str | None = None
    worktree_ref: str | None = None
    last_error: str | None = None
    records: list[str] = Field(default_factory=list)


class RigSummary(BaseModel):
    id: str
    repository_ref: str
    hook_counts: dict[str, int] = Field(default_factory=dict)


class ConvoySummary(BaseModel):
    id: str
    name: str
    done: int
    total: int
    blocked_ids: list[str] = Field(default_factory=list)
    error: str | None = None

    @property
    def fraction(self) -> float:
        return self.done / self.total if self.total else 0.0


class MoleculeSummary(BaseModel):
    id: str
    formula_name: str
    status: str
    rig_id: str | None = None
    convoy_id: str
    steps: dict[str, str] = Field(default_factory=dict)


class TownStatus(BaseModel):
    """Point-in-time view of a town."""
    name: str
    generated_at: datetime
    rigs: list[RigSummary] = Field(default_factory=list)
    hooks: list[HookSummary] = Field(default_factory=list)
    convoys: list[ConvoySummary] = Field(default_factory=list)
    molecules: list[MoleculeSummary] = Field(default_factory=list)


def build_status(town: "Town", include_archived: bool = False) -> TownStatus:
    """Collect a TownStatus. Convoy progress is read live from the record store.

    A record store failure marks the affected convoy with an error instead
    of failing the whole snapshot.
    """
    records_by_hook: dict[str, list[str]] = {}
    for assignment in town.dispatcher.list_assignments():
        records_by_hook.setdefault(assignment.hook_id, []).append(assignment.record_id)

    hooks = town.hooks.list_hooks()
    if not include_archived:
        hooks = [h for h in hooks if h.state is not HookState.ARCHIVED]

    rigs = []
    for rig in town.hooks.list_rigs():
        counts = Counter(h.state.value for h in town.hooks.list_hooks(rig_id=rig.id))
        rigs.append(RigSummary(id=rig.id, repository_ref=rig.repository_ref, hook_counts=dict(counts)))

    convoys = []
    for convoy in town.convoys.list_convoys():
        try:
            progress = town.convoys.progress(convoy.id)
        except InfrastructureError as e:
            convoys.append(ConvoySummary(id=convoy.id, name=convoy.name, done=0,
                                         total=len(convoy.record_ids), error=str(e)))
            continue
        convoys.append(ConvoySummary(id=convoy.id, name=convoy.name, done=progress.done,
                                     total=progress.total, blocked_ids=progress.blocked_ids))

    return TownStatus(
        name=town.config.name,
        generated_at=datetime.now(),
        rigs=rigs,
        hooks=[
            HookSummary(
                id=h.id,
                rig_id=h.rig_id,
                state=h.state.value,
                agent_binding=h.agent_binding,
                worktree_ref=h.worktree_ref,
                last_error=h.last_error,
                records=records_by_hook.get(h.id, []),
            )
            for h in hooks
        ],
        convoys=convoys,
        molecules=[
            MoleculeSummary(
                id=m.id,
                formula_name=m.formula_name,
                status=m.status.value,
                rig_id=m.rig_id,
                convoy_id=m.convoy_id,
                steps={name: state.value for name, state in m.step_states.items()},
            )
            for m in town.engine.list_molecules()
        ],
    )


HOOK_ICONS = {
    "active": "●",
    "suspended": "○",
    "created": "·",
    "completed": "✓",
    "archived": "-",
    "errored": "✗",
}


def progress_bar(fraction: float, width: int = 10) -> str:
    filled = min(width, int(fraction * width))
    return f"[{'█' * filled}{'░' * (width - filled)}]"


def format_status(status: TownStatus) -> str:
    lines = [f"═══ {status.name} ═══", ""]

    lines.append("▸ Hooks")
    if not status.hooks:
        lines.append("  No hooks")
    for hook in status.hooks:
        line = f"  {HOOK_ICONS.get(hook.state, '?')} {hook.id} ({hook.rig_id}) {hook.state}"
        if hook.agent_binding:
            line += f" [{hook.agent_binding}]"
        if hook.records:
            line += f" records: {', '.join(hook.records)}"
        if hook.last_error and hook.state == "errored":
            line += f" error: {hook.last_error}"
        lines.append(line)
    lines.append("")

    lines.append("▸ Convoys")
    if not status.convoys:
        lines.append("  No convoys")
    for convoy in status.convoys:
        if convoy.error:
            lines.append(f"  {convoy.id} {convoy.name}: unavailable ({convoy.error})")
            continue
        line = f"  {convoy.id} {progress_bar(convoy.fraction)} {convoy.done}/{convoy.total} {convoy.name}"
        if convoy.blocked_ids:
            line += f" blocked: {', '.join(convoy.blocked_ids)}"
        lines.append(line)
    lines.append("")

    lines.append("▸ Molecules")
    if not status.molecules:
        lines.append("  No molecules")
    for molecule in status.molecules:
        counts = Counter(molecule.steps.values())
        summary = " ".join(f"{state}={n}" for state, n in sorted(counts.items()))
        lines.append(f"  {molecule.id} {molecule.formula_name} {molecule.status} ({summary})")
    lines.append("")

    lines.append("▸ Rigs")
    if not status.rigs:
        lines.append("  No rigs configured")
    for rig in status.rigs:
        counts = ", ".join(f"{state}={n}" for state, n in sorted(rig.hook_counts.items()))
        lines.append(f"  {rig.id} → {rig.repository_ref}" + (f" ({counts})" if counts else ""))

    return "\n".join(lines) + "\n"
