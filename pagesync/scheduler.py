"""The build scheduler.

Every document gets a :class:`DocumentActor` that owns its build state:
the current job, the two debounce timers and the document status. File
watchers, the polling loop and worker threads never touch that state;
they post messages to the actor, which handles them one at a time.

Pipeline stages run on an executor. Each job carries a
:class:`~pagesync.cancel.CancelToken` that the stages check before every
write, and every completion message names its job so that results of a
superseded job are dropped by an identity check.
"""

import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from .cancel import CancelToken
from .cascade import CascadeRebuilder
from .compile_stage import CompileStage
from .debounce import Debouncer
from .errors import (
    CompileFailure,
    DocumentNotFoundError,
    ExtractionFailure,
    RenderFailure,
    Superseded,
    ToolNotFoundError,
)
from .format_cache import FormatCache
from .layout import LayoutCache
from .models import BuildJob, BuildPhase, BuildStatus, ReloadSignal, now_iso
from .preamble import write_macros
from .query import SyncQueries
from .renderer import HtmlBuilder, PageRenderer, list_pages
from .signals import MemoryStore, SignalDispatcher
from .synctex import LookupStore, extract_lookup, write_lookup

logger = logging.getLogger(__name__)


class SynchronousExecutor:
    """Executor running each task in the submitting thread.

    Used for one-shot command line builds and in tests.
    """

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait=True, cancel_futures=False):
        pass


# messages handled by DocumentActor


@dataclass
class Change:
    path: str
    now: float


@dataclass
class Tick:
    now: float


@dataclass
class BuildNow:
    structural: bool = False


@dataclass
class ExtractNow:
    pass


@dataclass
class Compiled:
    job: BuildJob
    unresolved: bool


@dataclass
class PriorityDone:
    job: BuildJob
    pages: list


@dataclass
class FullDone:
    job: BuildJob
    page_count: int


@dataclass
class FullFailed:
    job: BuildJob
    error: Exception


@dataclass
class JobFailed:
    job: BuildJob
    error: Exception


@dataclass
class JobCancelled:
    job: BuildJob


@dataclass
class ExtractionDone:
    token: CancelToken
    table: object


@dataclass
class ExtractionFailed:
    token: CancelToken
    error: Exception


@dataclass
class Cascaded:
    page_count: int


@dataclass
class Shutdown:
    pass


class DocumentActor:
    def __init__(self, scheduler, document):
        self.scheduler = scheduler
        self.document = document
        build = scheduler.settings.build
        self.build_debounce = Debouncer(build.debounce_ms / 1000.0)
        self.extract_debounce = Debouncer(build.synctex_debounce_ms / 1000.0)
        self.current_job = None
        # job holding the build slot (compile + priority render)
        self._slot_job = None
        self.pending_structural = False
        self.next_structural = False
        self.extraction_token = None
        self._inbox = queue.Queue()
        self._lock = threading.Lock()

    def __repr__(self):
        return f"DocumentActor({self.document.name!r})"

    @property
    def is_derived(self):
        return self.document.depends_on is not None

    @property
    def is_html(self):
        return self.document.format == "html"

    def post(self, message):
        self._inbox.put(message)
        self._drain()

    def _drain(self):
        # Whoever holds the lock handles every queued message; a post from
        # inside a handler is picked up by the loop that is already running.
        while True:
            if not self._lock.acquire(blocking=False):
                return
            try:
                while True:
                    try:
                        message = self._inbox.get_nowait()
                    except queue.Empty:
                        break
                    self._handle(message)
            finally:
                self._lock.release()
            if self._inbox.empty():
                return

    def _handle(self, message):
        handler = getattr(self, "_on_" + type(message).__name__)
        try:
            handler(message)
        except Exception:
            logger.exception(
                "[build:%s] error handling %s", self.document.name, message
            )

    # change events and timers

    def _on_Change(self, message):
        if self.is_derived:
            logger.debug(
                "ignoring change to derived document %s", self.document.name
            )
            return
        if not self.is_html and self.scheduler.compile_stage.classify_change(
            self.document, message.path
        ):
            self.pending_structural = True
        self.build_debounce.notify(message.now)

    def _on_Tick(self, message):
        if self.build_debounce.fire_due(message.now):
            self._start_job()
        if self.extract_debounce.is_due(message.now):
            job = self.current_job
            # extraction waits until compiling and converting are over
            if job is None or not job.is_active:
                self.extract_debounce.fire_due(message.now)
                self._start_extraction()

    def _on_BuildNow(self, message):
        if self.is_derived:
            return
        self.pending_structural = self.pending_structural or message.structural
        self.build_debounce.cancel()
        self.build_debounce.notify(self.scheduler.clock())
        self.build_debounce.fire_due(self.build_debounce.deadline)
        self._start_job()

    def _on_ExtractNow(self, message):
        if self.is_derived or self.is_html:
            return
        self.extract_debounce.cancel()
        self.extract_debounce.notify(self.scheduler.clock())
        self.extract_debounce.fire_due(self.extract_debounce.deadline)
        self._start_extraction()

    def _on_Shutdown(self, message):
        job = self.current_job
        if job is not None and job.is_active:
            job.token.cancel()
            job.phase = BuildPhase.CANCELLED
            job.add_log("Cancelled on shutdown")
            self._release_slot(job)
            self._finish_job(job, BuildStatus.CANCELLED)
        if self.extraction_token is not None:
            self.extraction_token.cancel()
        self.build_debounce.cancel()
        self.extract_debounce.cancel()

    def _on_Cascaded(self, message):
        self.document.pages = message.page_count
        self.scheduler.save(self.document)

    # jobs

    def _supersede(self, job):
        grace = self.scheduler.settings.build.cancel_grace_ms / 1000.0
        job.token.cancel()
        job.phase = BuildPhase.CANCELLED
        job.add_log("Superseded by a newer change")
        if not job.finished.wait(grace):
            logger.info(
                "[build:%s] job %s still tearing down, starting anyway",
                self.document.name,
                job.job_id,
            )

    def _start_job(self):
        document = self.document
        old = self.current_job
        if old is not None and old.is_active:
            self._supersede(old)
        if self.extraction_token is not None:
            # the interrupted extraction runs again after this build
            self.extraction_token.cancel()
            self.extraction_token = None
            self.extract_debounce.cancel()
            self.extract_debounce.notify(self.scheduler.clock())
        structural = self.pending_structural or self.next_structural
        self.pending_structural = False
        self.next_structural = False
        if self.is_html:
            pages = None
        else:
            pages = self.scheduler.dispatcher.visible_pages(document)
        job = BuildJob(document.name, structural, pages)
        self.current_job = job
        self._slot_job = job
        document.build_status = BuildStatus.BUILDING
        document.last_build = job.started_at
        self.scheduler.save(document)
        job.add_log(
            "Starting structural build" if structural else "Starting build"
        )
        if self.is_html:
            self._submit(self._run_html, job)
        else:
            self._submit(self._run_priority, job)

    def _submit(self, fn, job):
        job.finished.clear()
        future = self.scheduler.executor.submit(fn, job)
        future.add_done_callback(lambda f: self._check_worker(f, job))

    def _check_worker(self, future, job):
        if future.cancelled() or future.exception() is None:
            return
        error = future.exception()
        logger.error(
            "[build:%s] worker crashed",
            self.document.name,
            exc_info=(type(error), error, error.__traceback__),
        )
        job.finished.set()
        self.post(JobFailed(job, error))

    def _release_slot(self, job):
        if self._slot_job is job:
            self._slot_job = None
            self.build_debounce.finish()

    def _finish_job(self, job, status):
        document = self.document
        document.build_status = status
        document.last_build = now_iso()
        self.scheduler.save(document)
        self.scheduler.write_build_log(document, job.log)

    def _on_Compiled(self, message):
        job = message.job
        if job is not self.current_job or not job.is_active:
            return
        job.phase = BuildPhase.CONVERTING
        if message.unresolved:
            self.next_structural = True

    def _on_PriorityDone(self, message):
        job = message.job
        if job is not self.current_job or not job.is_active:
            return
        if message.pages:
            self.scheduler.dispatcher.publish(
                self.document, ReloadSignal.partial(message.pages)
            )
        self._release_slot(job)
        self._submit(self._run_full, job)

    def _on_FullDone(self, message):
        job = message.job
        if job is not self.current_job or not job.is_active:
            return
        document = self.document
        document.pages = message.page_count
        job.phase = BuildPhase.DONE
        job.add_log(
            f"Generated {message.page_count} pages in {job.elapsed():.1f}s"
        )
        self._release_slot(job)
        self._finish_job(job, BuildStatus.SUCCESS)
        self.scheduler.dispatcher.publish(document, ReloadSignal.full())
        self.scheduler.cascade_from(document)
        if not self.is_html:
            # every completed build restarts the extraction countdown
            self.extract_debounce.cancel()
            self.extract_debounce.notify(self.scheduler.clock())

    def _on_FullFailed(self, message):
        job = message.job
        if job is not self.current_job or not job.is_active:
            return
        job.add_log(f"Page conversion failed (non-fatal): {message.error}")
        job.phase = BuildPhase.DONE
        self._release_slot(job)
        if list_pages(self.document.output_dir):
            self._finish_job(job, BuildStatus.SUCCESS)
        else:
            job.error = str(message.error)
            self._finish_job(job, BuildStatus.FAILED)

    def _on_JobFailed(self, message):
        job = message.job
        if job is not self.current_job or not job.is_active:
            return
        job.phase = BuildPhase.FAILED
        job.error = str(message.error)
        job.add_log(f"Build failed: {message.error}")
        output = getattr(message.error, "output", "")
        if output:
            job.log.extend(output.rstrip().splitlines()[-40:])
        self._release_slot(job)
        self._finish_job(job, BuildStatus.FAILED)

    def _on_JobCancelled(self, message):
        job = message.job
        job.phase = BuildPhase.CANCELLED
        if job is not self.current_job:
            return
        # cancelled without a successor, e.g. on shutdown
        self._release_slot(job)
        self._finish_job(job, BuildStatus.CANCELLED)

    # worker side, running on the executor

    def _run_priority(self, job):
        document = self.document
        scheduler = self.scheduler
        try:
            result = scheduler.compile_stage.run(
                document, job.structural, job.token, job.add_log
            )
            self.post(Compiled(job, result.unresolved))
            try:
                artifacts = scheduler.renderer.render(
                    document,
                    job.priority_pages,
                    job.token,
                    f"{job.job_id}-priority",
                    job.add_log,
                )
                pages = [a.page for a in artifacts]
            except (RenderFailure, ToolNotFoundError) as e:
                job.add_log(f"Priority conversion failed (non-fatal): {e}")
                pages = []
            outcome = PriorityDone(job, pages)
        except Superseded:
            outcome = JobCancelled(job)
        except (CompileFailure, ToolNotFoundError) as e:
            outcome = JobFailed(job, e)
        # finished is set before posting: handling PriorityDone starts the
        # next worker for this job and clears it again
        job.finished.set()
        self.post(outcome)

    def _run_full(self, job):
        document = self.document
        try:
            artifacts = self.scheduler.renderer.render(
                document, None, job.token, f"{job.job_id}-full", job.add_log
            )
            try:
                write_macros(
                    document.main_path,
                    document.output_dir / "macros.json",
                    job.token,
                )
            except (OSError, ValueError) as e:
                job.add_log(f"Macro extraction failed (non-fatal): {e}")
            outcome = FullDone(job, len(artifacts))
        except Superseded:
            outcome = JobCancelled(job)
        except (RenderFailure, ToolNotFoundError) as e:
            outcome = FullFailed(job, e)
        job.finished.set()
        self.post(outcome)

    def _run_html(self, job):
        try:
            count = self.scheduler.html_builder.build(
                self.document, job.token, job.job_id, job.add_log
            )
            outcome = FullDone(job, count)
        except Superseded:
            outcome = JobCancelled(job)
        except (RenderFailure, ToolNotFoundError) as e:
            outcome = JobFailed(job, e)
        job.finished.set()
        self.post(outcome)

    # cross-reference extraction

    def _start_extraction(self):
        if self.extraction_token is not None:
            self.extraction_token.cancel()
        token = CancelToken()
        self.extraction_token = token
        job = self.current_job
        if job is not None and job.phase is BuildPhase.DONE:
            job.phase = BuildPhase.EXTRACTING
        future = self.scheduler.executor.submit(self._run_extraction, token)
        future.add_done_callback(lambda f: self._check_extraction(f, token))

    def _check_extraction(self, future, token):
        if future.cancelled() or future.exception() is None:
            return
        self.post(ExtractionFailed(token, future.exception()))

    def _run_extraction(self, token):
        document = self.document
        start = time.time()
        try:
            table = extract_lookup(
                document.main_path,
                document.synctex_path,
                token=token,
                timeout=self.scheduler.settings.build.extraction_timeout,
            )
            token.raise_if_cancelled()
            document.output_dir.mkdir(parents=True, exist_ok=True)
            write_lookup(table, document.output_dir / "lookup.json", token)
            logger.info(
                "[build:%s] lookup table with %d lines in %.1fs",
                document.name,
                len(table.lines),
                time.time() - start,
            )
            self.post(ExtractionDone(token, table))
        except Superseded:
            self.post(ExtractionDone(token, None))
        except (ExtractionFailure, OSError) as e:
            self.post(ExtractionFailed(token, e))

    def _end_extraction(self):
        self.extraction_token = None
        self.extract_debounce.finish()
        job = self.current_job
        if job is not None and job.phase is BuildPhase.EXTRACTING:
            job.phase = BuildPhase.DONE

    def _on_ExtractionDone(self, message):
        if message.token is not self.extraction_token:
            return
        self._end_extraction()
        if message.table is None:
            return
        self.scheduler.lookups.replace(self.document.name, message.table)
        if self.current_job is not None:
            self.current_job.add_log(
                f"Lookup table updated ({len(message.table.lines)} lines)"
            )
        self.scheduler.cascade_from(self.document)

    def _on_ExtractionFailed(self, message):
        if message.token is not self.extraction_token:
            return
        self._end_extraction()
        logger.warning(
            "[build:%s] extraction failed: %s",
            self.document.name,
            message.error,
        )
        if self.current_job is not None:
            self.current_job.add_log(
                f"Synctex extraction failed (non-fatal): {message.error}"
            )

    def status(self):
        job = self.current_job
        return {
            "status": self.document.build_status.value,
            "phase": job.phase.value if job is not None else None,
            "log": list(job.log) if job is not None else [],
        }


class BuildScheduler:
    """Builds registered documents as their sources change.

    ``clock`` returns seconds and drives both debounce timers; ``pump`` is
    called with the current time by :meth:`run_forever` or directly by
    tests. Caches are explicit objects and may be shared or injected.
    """

    def __init__(
        self,
        settings,
        store=None,
        shared_store=None,
        clock=time.monotonic,
        executor=None,
        format_cache=None,
        lookups=None,
        layouts=None,
    ):
        self.settings = settings
        self.store = store
        self.clock = clock
        if executor is None:
            executor = ThreadPoolExecutor(
                max_workers=4, thread_name_prefix="pagesync"
            )
        self.executor = executor
        build = settings.build
        if format_cache is None:
            format_cache = FormatCache(settings.commands, build.compile_timeout)
        self.format_cache = format_cache
        self.compile_stage = CompileStage(
            settings.commands, format_cache, build.compile_timeout
        )
        self.renderer = PageRenderer(settings.commands, build.render_timeout)
        self.html_builder = HtmlBuilder(
            settings.commands, build.render_timeout, self.renderer
        )
        if shared_store is None:
            shared_store = MemoryStore()
        self.dispatcher = SignalDispatcher(shared_store)
        self.cascade = CascadeRebuilder(
            self.dispatcher, build.compile_timeout, self.renderer.commit_lock
        )
        self.lookups = lookups if lookups is not None else LookupStore()
        if layouts is None:
            layouts = LayoutCache(
                settings.layout.page_gap, settings.layout.tab_spacing
            )
        self.layouts = layouts
        self.queries = SyncQueries(settings.layout, self.lookups, layouts)
        self._actors = {}
        self._stop = threading.Event()

    def register(self, document):
        if document.name in self._actors:
            raise ValueError(f"Document '{document.name}' already registered")
        document.output_dir.mkdir(parents=True, exist_ok=True)
        actor = DocumentActor(self, document)
        self._actors[document.name] = actor
        self.save(document)
        return actor

    def actor(self, name):
        name = getattr(name, "name", name)
        try:
            return self._actors[name]
        except KeyError:
            raise DocumentNotFoundError(
                f"Document '{name}' is not registered"
            ) from None

    def document(self, name):
        return self.actor(name).document

    @property
    def documents(self):
        return [a.document for a in self._actors.values()]

    def dependents_of(self, document):
        return [
            a.document
            for a in self._actors.values()
            if a.document.depends_on == document.name
        ]

    def notify_change(self, document, path):
        """Report that ``path`` of ``document`` changed."""
        self.actor(document).post(Change(str(path), self.clock()))

    def build_now(self, document, structural=False):
        """Start a build right away, skipping the debounce window."""
        self.actor(document).post(BuildNow(structural))

    def extract_now(self, document):
        self.actor(document).post(ExtractNow())

    def pump(self, now=None):
        """Fire every debounce timer that is due at ``now``."""
        if now is None:
            now = self.clock()
        for actor in list(self._actors.values()):
            actor.post(Tick(now))

    def build_status(self, document):
        return self.actor(document).status()

    def save(self, document):
        if self.store is not None:
            self.store.save(document)

    def write_build_log(self, document, lines):
        path = document.output_dir / "build.log"
        try:
            path.write_text("\n".join(lines) + "\n")
        except OSError as e:
            logger.warning("could not write %s: %s", path, e)

    def cascade_from(self, document):
        for dependent in self.dependents_of(document):
            self.executor.submit(self._cascade, document, dependent)

    def _cascade(self, document, dependent):
        count = self.cascade.rebuild(document, dependent)
        if count is not None:
            self.actor(dependent).post(Cascaded(count))

    def run_forever(self, poll_interval=0.05):
        while not self._stop.is_set():
            self.pump()
            self._stop.wait(poll_interval)

    def stop(self):
        self._stop.set()
        for actor in list(self._actors.values()):
            actor.post(Shutdown())
        self.executor.shutdown(wait=True)
