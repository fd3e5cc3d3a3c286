"""Glue between a Project, the Executor and run history."""

import logging
import threading
from datetime import UTC, datetime
from typing import List, Optional

from eltflow.exceptions import EltflowError
from eltflow.executor import Executor, NodeCallback
from eltflow.models import RunRecord, RunStatus
from eltflow.project import Project
from eltflow.resilience import RetryConfig
from eltflow.scheduler import Scheduler, SchedulerConfig
from eltflow.state import StateDatabase

logger = logging.getLogger(__name__)


class ProjectRunner:
    """
    Executes one run of a project's graph. Usable as a scheduler job.

    The graph is reloaded for every run so edits to models are picked up by the
    next slot without restarting the scheduler.
    """

    def __init__(
        self,
        project: Project,
        max_workers: int = 1,
        retry_config: Optional[RetryConfig] = None,
        select: Optional[List[str]] = None,
        on_node_complete: Optional[NodeCallback] = None,
    ):
        self.project = project
        self.max_workers = max_workers
        self.retry_config = retry_config or RetryConfig()
        self.select = select
        self.on_node_complete = on_node_complete

    def __call__(self, record: RunRecord, cancel_event: threading.Event) -> RunRecord:
        graph = self.project.load_graph()
        selected = self.project.select(graph, self.select) if self.select else None
        if selected is not None and not selected:
            raise EltflowError(f'No nodes match selection: {" ".join(self.select)}')

        executor = Executor(
            max_workers=self.max_workers,
            compiler=self.project.compiler,
            retry_config=self.retry_config,
        )
        with self.project.connection_pool(self.max_workers) as pool:
            return executor.run(
                graph,
                pool,
                record=record,
                select=selected,
                cancel_event=cancel_event,
                on_node_complete=self.on_node_complete,
            )

    def run_once(self, state_db: Optional[StateDatabase] = None, force: bool = False) -> RunRecord:
        """Run once as a manual trigger, recording history in ``state_db``.

        Ctrl-C cancels the run: nodes in flight finish their current step and the
        rest are marked cancelled.

        Raises:
            EltflowError: If another run is recorded as running and ``force`` is not set
        """
        if state_db is not None and not force:
            active = state_db.get_active_run()
            if active is not None:
                raise EltflowError(
                    f'Run {active.run_id} is still running (started {active.started_at}); use --force to override'
                )

        record = RunRecord()
        record.status = RunStatus.RUNNING
        record.started_at = datetime.now(UTC)
        if state_db is not None:
            state_db.save_run(record)

        cancel_event = threading.Event()
        failure: List[BaseException] = []

        def target():
            try:
                self(record, cancel_event)
            except Exception as e:
                failure.append(e)

        worker = threading.Thread(target=target, name=f'eltflow-run-{record.run_id}')
        worker.start()
        try:
            while worker.is_alive():
                worker.join(0.5)
        except KeyboardInterrupt:
            logger.warning('Interrupted, cancelling run')
            cancel_event.set()
            worker.join()

        if failure:
            record.status = RunStatus.FAILED
            record.error = str(failure[0])
        elif not record.status.is_terminal:
            record.status = RunStatus.FAILED
            record.error = record.error or 'Run cancelled'
        record.completed_at = record.completed_at or datetime.now(UTC)

        if state_db is not None:
            state_db.save_run(record)
        if failure and not isinstance(failure[0], EltflowError):
            raise failure[0]
        return record


def build_scheduler(
    project: Project,
    config: Optional[SchedulerConfig] = None,
    state_db: Optional[StateDatabase] = None,
    on_node_complete: Optional[NodeCallback] = None,
) -> Scheduler:
    """Scheduler whose slots run ``project`` with its configured concurrency and retry."""
    config = config or project.scheduler_config()
    runner = ProjectRunner(
        project,
        max_workers=config.max_concurrent_models,
        retry_config=config.retry,
        on_node_complete=on_node_complete,
    )
    return Scheduler(config, runner, state_db=state_db)
