"""
Session Registry for MultiDeck.

Acts as the controller layer between the caller (CLI, UI, monitor) and the
playback sessions. Owns every PlaybackSession, dispatches their loads to
background threads and exposes a uniform poll surface.

Threading model:
- Each load runs on its own daemon thread (decode + waveform + tempo).
- Workers never touch a session. They post a LoadResult on a queue.
- pump(), called on the caller's control path, drains that queue and
  commits results. This is the only place a session leaves LOADING, so
  readers never see a half-published analysis.
- poll() only reads; it never waits for a load.

Event System:
- Register callbacks with: registry.on('event_name', callback_function)
- Events are emitted from pump()/add()/remove(), i.e. on the control path

Available Events:
- 'session_added': (handle)
- 'session_loaded': (handle, snapshot)
- 'session_failed': (handle, snapshot)
- 'session_ended': (handle)
- 'session_removed': (handle)
"""

import time
import queue
import logging
import threading
import uuid
from typing import Callable, Optional, Dict, List

from config import load_analysis_settings
from .loader import run_load_job
from .session import PlaybackSession, SessionSnapshot

logger = logging.getLogger("MultiDeck.Registry")


class _LoadJob:
    """Bookkeeping for one in-flight load."""
    def __init__(self, token, thread, cancel_event):
        self.token = token
        self.thread = thread
        self.cancel_event = cancel_event


class SessionRegistry:
    """
    Manages a set of independent playback sessions.

    Responsibilities:
    - Creates sessions and starts their background loads
    - Commits load results on the caller's thread (pump)
    - Detects tracks that played to the end
    - Cancels loads of removed sessions
    - Emits callbacks for UI updates

    Usage:
        registry = SessionRegistry(decoder=FfmpegDecoder(), sink_factory=PygameSink)
        handle = registry.add("song.mp3")
        while running:
            registry.pump()
            for snap in registry.poll():
                draw(snap)
            time.sleep(POLL_INTERVAL)
        registry.get(handle).play()
    """

    def __init__(self, decoder, sink_factory: Optional[Callable] = None,
                 settings: Optional[dict] = None):
        """
        Args:
            decoder: Object with decode(source) -> SampleBuffer
            sink_factory: Callable(buffer) -> playback sink, or None for no output
            settings: Analysis settings dict (config.load_analysis_settings() if None)
        """
        self.decoder = decoder
        self.sink_factory = sink_factory
        self.settings = settings if settings is not None else load_analysis_settings()

        # Insertion-ordered: handle -> session
        self._sessions: Dict[str, PlaybackSession] = {}

        # In-flight loads (guarded by _jobs_lock; workers never take it)
        self._jobs: Dict[str, _LoadJob] = {}
        self._jobs_lock = threading.Lock()

        # Result channel from load workers
        self._results: "queue.Queue" = queue.Queue()

        # Callbacks for UI updates (event-driven architecture)
        self._callbacks: Dict[str, List[Callable]] = {
            'session_added': [],      # (handle)
            'session_loaded': [],     # (handle, snapshot)
            'session_failed': [],     # (handle, snapshot)
            'session_ended': [],      # (handle)
            'session_removed': [],    # (handle)
        }

        logger.info("SessionRegistry initialized")

    # =========================================================================
    # EVENT SYSTEM
    # =========================================================================

    def on(self, event: str, callback: Callable) -> None:
        """
        Register a callback for an event.

        Args:
            event: Event name (see module docstring for available events)
            callback: Function to call when event occurs
        """
        if event in self._callbacks:
            self._callbacks[event].append(callback)
        else:
            logger.warning(f"Unknown event: {event}. Available: {list(self._callbacks.keys())}")

    def off(self, event: str, callback: Callable) -> None:
        """Unregister a callback for an event."""
        if event in self._callbacks and callback in self._callbacks[event]:
            self._callbacks[event].remove(callback)

    def _emit(self, event: str, *args) -> None:
        """Emit an event to all registered callbacks."""
        for callback in self._callbacks.get(event, []):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in callback for {event}: {e}")

    # =========================================================================
    # SESSIONS
    # =========================================================================

    def add(self, source) -> str:
        """
        Create a session for `source` and start loading it in the background.

        Returns:
            Handle identifying the session
        """
        handle = str(uuid.uuid4())
        session = PlaybackSession(source)
        self._sessions[handle] = session
        logger.info(f"=== ADD: {session.name} (handle={handle}) ===")
        self._emit('session_added', handle)
        self._start_load(handle, session)
        return handle

    def reload(self, handle) -> bool:
        """Decode and analyze a loaded session again."""
        session = self._sessions.get(handle)
        if session is None:
            return False
        return self._start_load(handle, session)

    def remove(self, handle) -> bool:
        """
        Cancel any in-flight load, destroy the session and forget it.

        A load that completes afterwards is discarded by pump().
        """
        session = self._sessions.pop(handle, None)
        if session is None:
            logger.debug(f"remove: unknown handle {handle}")
            return False

        with self._jobs_lock:
            job = self._jobs.pop(handle, None)
        if job is not None:
            job.cancel_event.set()
            logger.info(f"Cancelled in-flight load for {session.name}")

        session.destroy()
        self._emit('session_removed', handle)
        return True

    def get(self, handle) -> Optional[PlaybackSession]:
        """The session for `handle`, or None."""
        return self._sessions.get(handle)

    def handles(self) -> List[str]:
        """Handles in insertion order."""
        return list(self._sessions.keys())

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, handle):
        return handle in self._sessions

    # =========================================================================
    # LOADING
    # =========================================================================

    def _start_load(self, handle, session) -> bool:
        token = session.begin_load()
        if token is None:
            return False

        cancel_event = threading.Event()
        thread = threading.Thread(
            target=run_load_job,
            args=(handle, token, session.source, self.decoder, self.settings,
                  cancel_event, self._results),
            name=f"load-{session.name}",
            daemon=True
        )
        with self._jobs_lock:
            self._jobs[handle] = _LoadJob(token, thread, cancel_event)
        thread.start()
        logger.debug(f"Started background load for {session.name} (token={token})")
        return True

    def pump(self) -> int:
        """
        Commit finished loads and detect ended tracks. Call on the control path.

        Returns:
            Number of load results committed
        """
        committed = 0
        while True:
            try:
                result = self._results.get_nowait()
            except queue.Empty:
                break
            if self._commit(result):
                committed += 1

        for handle, session in list(self._sessions.items()):
            if session.check_finished():
                self._emit('session_ended', handle)

        return committed

    def _commit(self, result) -> bool:
        with self._jobs_lock:
            job = self._jobs.get(result.handle)
            if job is not None and job.token == result.token:
                del self._jobs[result.handle]

        session = self._sessions.get(result.handle)
        if session is None:
            logger.debug(f"Discarding load result for removed session {result.handle}")
            return False

        if result.ok:
            analysis = result.analysis
            sink = self._make_sink(session, analysis.buffer)
            if not session.load_succeeded(result.token, analysis.buffer, analysis.waveform,
                                          analysis.bpm, sink):
                return False
            self._emit('session_loaded', result.handle, session.snapshot(result.handle))
        else:
            if not session.load_failed(result.token, result.error_kind, result.error_message):
                return False
            self._emit('session_failed', result.handle, session.snapshot(result.handle))
        return True

    def _make_sink(self, session, buffer):
        if self.sink_factory is None:
            return None
        try:
            return self.sink_factory(buffer)
        except Exception as e:
            # No audio output is not a load failure; the session still works silently
            logger.error(f"[{session.name}] Could not open playback sink: {e}")
            return None

    def wait_for_loads(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every in-flight load has finished, then pump().

        Returns:
            True if all loads finished within `timeout`
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._jobs_lock:
                threads = [job.thread for job in self._jobs.values()]
            pending = [t for t in threads if t.is_alive()]
            if not pending:
                break
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                self.pump()
                return False
            pending[0].join(remaining)
            # Commit as we go so finished jobs drop out of the table
            self.pump()
        self.pump()
        return True

    def loads_in_flight(self) -> int:
        """Number of sessions currently loading."""
        with self._jobs_lock:
            return len(self._jobs)

    # =========================================================================
    # POLLING
    # =========================================================================

    def poll(self) -> List[SessionSnapshot]:
        """Snapshots of every session, in insertion order. Read-only."""
        return [session.snapshot(handle) for handle, session in list(self._sessions.items())]

    def shutdown(self):
        """Remove every session."""
        logger.info("Shutting down registry")
        for handle in list(self._sessions.keys()):
            self.remove(handle)
