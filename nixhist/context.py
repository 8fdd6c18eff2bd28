"""Session context holding every nixhist component."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from nixhist.config import NixhistConfig, YamlPinStore
from nixhist.detect import SystemInfo, layouts_for
from nixhist.executor import CommandExecutor
from nixhist.packages import PackageCatalog
from nixhist.planner import MutationPlanner
from nixhist.registry import GenerationRegistry, PinStore
from nixhist.source import GenerationSource
from nixhist.workflow import Clock, MutationWorkflow


@dataclass(frozen=True)
class DashboardContext:
    """Created once at the entry point and passed to whatever needs it."""

    config: NixhistConfig
    system: SystemInfo
    registry: GenerationRegistry
    catalog: PackageCatalog
    planner: MutationPlanner
    workflow: MutationWorkflow

    @property
    def dry_run(self) -> bool:
        return self.workflow.dry_run

    @staticmethod
    def create(
        config: NixhistConfig,
        source: GenerationSource,
        executor: CommandExecutor,
        system: SystemInfo,
        dry_run: bool = False,
        clock: Optional[Clock] = None,
        pin_store: Optional[PinStore] = None,
        config_path: Optional[Path] = None,
    ) -> "DashboardContext":
        """Wire the registry, catalog, planner and workflow together.

        Pins persist to the configuration file unless *pin_store* is given.
        """
        registry = GenerationRegistry(
            source, pin_store or YamlPinStore(config, config_path)
        )
        planner = MutationPlanner(registry, layouts_for(system))
        workflow = MutationWorkflow(
            registry,
            planner,
            executor,
            clock=clock,
            dry_run=dry_run,
            undo_window=config.undo_window,
        )
        return DashboardContext(
            config=config,
            system=system,
            registry=registry,
            catalog=PackageCatalog(source),
            planner=planner,
            workflow=workflow,
        )
