"""
Mutation planning for nixhist.

The planner turns a requested action into a ``MutationPlan``: the exact
commands that will run and a preview that lists them. It only reads the
registry and never runs anything.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Mapping, Sequence, Tuple

from nixhist.errors import AlreadyCurrent, ProtectedGeneration, SourceUnavailable
from nixhist.executor import Command
from nixhist.registry import Generation, GenerationRegistry
from nixhist.source import ProfileKind

logger = logging.getLogger("nixhist.planner")


class Action(Enum):
    RESTORE = "restore"
    DELETE = "delete"
    PIN = "pin"
    UNPIN = "unpin"
    UNDO_DELETE = "undo-delete"


@dataclass(frozen=True)
class ProfileLayout:
    """Where a profile lives and which tools manage it."""

    profile: Path
    home_manager_standalone: bool = False
    home_manager_cli: bool = False

    def link(self, profile_kind: ProfileKind, generation_id: int) -> Path:
        return self.profile.parent / f"{profile_kind.link_prefix}-{generation_id}-link"


@dataclass(frozen=True)
class MutationPlan:
    """An immutable, single-use description of a mutation."""

    action: Action
    profile_kind: ProfileKind
    target_ids: Tuple[int, ...]
    commands: Tuple[Command, ...]
    preview_text: str

    @property
    def requires_confirmation(self) -> bool:
        return bool(self.commands)


def _id_list(generation_ids: Iterable[int]) -> str:
    return ", ".join(f"#{gen_id}" for gen_id in generation_ids)


def render_preview(headline: str, commands: Sequence[Command]) -> str:
    """Build the preview shown before a plan runs.

    Every command of the plan appears exactly as it will execute, in order.
    """
    lines = [headline, ""]
    if not commands:
        lines.append("No external commands will run.")
        return "\n".join(lines)

    lines.append("The following commands will run:")
    for index, command in enumerate(commands, start=1):
        lines.append(f"  {index}. {command.render()}")
    return "\n".join(lines)


class MutationPlanner:
    """Builds mutation plans from the current registry state."""

    def __init__(
        self,
        registry: GenerationRegistry,
        layouts: Mapping[ProfileKind, ProfileLayout],
    ):
        self.registry = registry
        self.layouts = dict(layouts)

    def _layout(self, profile_kind: ProfileKind) -> ProfileLayout:
        try:
            return self.layouts[profile_kind]
        except KeyError:
            raise SourceUnavailable(f"No {profile_kind} profile configured") from None

    def _plan(
        self,
        action: Action,
        profile_kind: ProfileKind,
        target_ids: Sequence[int],
        commands: Sequence[Command],
        headline: str,
    ) -> MutationPlan:
        plan = MutationPlan(
            action=action,
            profile_kind=profile_kind,
            target_ids=tuple(target_ids),
            commands=tuple(commands),
            preview_text=render_preview(headline, commands),
        )
        logger.debug(f"Planned {action.value} of {profile_kind} {_id_list(target_ids)}")
        return plan

    def plan_restore(self, profile_kind: ProfileKind, target_id: int) -> MutationPlan:
        """
        Plan switching a profile back to an existing generation.

        Raises:
            UnknownGeneration: If the generation is not loaded
            AlreadyCurrent: If the generation is already current
        """
        generation = self.registry.get(profile_kind, target_id)
        if generation.is_current:
            raise AlreadyCurrent(profile_kind, target_id)

        layout = self._layout(profile_kind)
        link = layout.link(profile_kind, target_id)
        description = f"restore {profile_kind} generation {target_id}"
        switch = Command(
            (
                "nix-env",
                "--switch-generation",
                str(target_id),
                "--profile",
                str(layout.profile),
            ),
            description=f"switch {profile_kind} profile to generation {target_id}",
            privileged=profile_kind is ProfileKind.SYSTEM,
        )

        commands: List[Command]
        if profile_kind is ProfileKind.SYSTEM:
            activate = Command(
                (str(layout.profile / "bin" / "switch-to-configuration"), "switch"),
                description=f"activate {profile_kind} generation {target_id}",
                privileged=True,
            )
            commands = [switch, activate]
        elif layout.home_manager_standalone:
            commands = [Command((str(link / "activate"),), description=description)]
        else:
            commands = [switch]

        return self._plan(
            Action.RESTORE,
            profile_kind,
            [target_id],
            commands,
            f"Restore {profile_kind} generation #{target_id} "
            f"from {generation.formatted_date()}",
        )

    def plan_delete(
        self, profile_kind: ProfileKind, target_ids: Iterable[int]
    ) -> MutationPlan:
        """
        Plan deleting one or more generations with a single command.

        Raises:
            ValueError: If no generation is given
            UnknownGeneration: If a generation is not loaded
            ProtectedGeneration: If a generation is pinned or current
        """
        ids = sorted(set(target_ids))
        if not ids:
            raise ValueError("No generations specified for deletion")

        for gen_id in ids:
            if not self.registry.is_deletable(profile_kind, gen_id):
                generation = self.registry.get(profile_kind, gen_id)
                reason = "current" if generation.is_current else "pinned"
                raise ProtectedGeneration(profile_kind, gen_id, reason)

        layout = self._layout(profile_kind)
        id_args = tuple(str(gen_id) for gen_id in ids)
        description = f"delete {len(ids)} {profile_kind} generation(s)"
        if profile_kind is ProfileKind.HOME_MANAGER and layout.home_manager_cli:
            command = Command(
                ("home-manager", "remove-generations") + id_args,
                description=description,
            )
        else:
            command = Command(
                ("nix-env", "--delete-generations")
                + id_args
                + ("--profile", str(layout.profile)),
                description=description,
                privileged=profile_kind is ProfileKind.SYSTEM,
            )

        return self._plan(
            Action.DELETE,
            profile_kind,
            ids,
            [command],
            f"Delete {len(ids)} {profile_kind} generation(s): {_id_list(ids)}",
        )

    def plan_pin_toggle(self, profile_kind: ProfileKind, target_id: int) -> MutationPlan:
        """
        Plan flipping the pin of a generation. Pin plans have no commands.

        Raises:
            UnknownGeneration: If the generation is not loaded
        """
        generation = self.registry.get(profile_kind, target_id)
        action = Action.UNPIN if generation.is_pinned else Action.PIN
        verb = "Unpin" if generation.is_pinned else "Pin"
        return self._plan(
            action,
            profile_kind,
            [target_id],
            [],
            f"{verb} {profile_kind} generation #{target_id}",
        )

    def plan_undo_delete(
        self, profile_kind: ProfileKind, generations: Sequence[Generation]
    ) -> MutationPlan:
        """
        Plan re-creating the links of just-deleted generations.

        Deleting a generation only removes its ``<prefix>-<id>-link``; the
        store path survives until the next garbage collection, so pointing a
        new link at it brings the generation back.

        Raises:
            ValueError: If a generation has no recorded store path
        """
        layout = self._layout(profile_kind)
        ordered = sorted(generations, key=lambda g: g.id)
        commands = []
        for generation in ordered:
            if not generation.store_path:
                raise ValueError(
                    f"{profile_kind} #{generation.id} has no recorded store path"
                )
            commands.append(
                Command(
                    (
                        "ln",
                        "-sfn",
                        generation.store_path,
                        str(layout.link(profile_kind, generation.id)),
                    ),
                    description=f"recreate {profile_kind} generation {generation.id}",
                    privileged=profile_kind is ProfileKind.SYSTEM,
                )
            )

        ids = [generation.id for generation in ordered]
        return self._plan(
            Action.UNDO_DELETE,
            profile_kind,
            ids,
            commands,
            f"Undo deletion of {profile_kind} generation(s): {_id_list(ids)}",
        )
