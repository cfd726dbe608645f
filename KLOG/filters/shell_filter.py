"""
Shell Filter Module - sandboxed external text-processing pipelines per session

Handles:
- Validating pipelines against an allow-list of text utilities
- Rejecting chaining, subshells, redirection and file-system escapes
- Spawning `sh -c <command>` with byte pipes
- Relaying stdout / stderr / abnormal exit as per-session events
- Terminating the whole process tree on stop (psutil)
"""
import codecs
import logging
import re
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Union

import psutil

from KLOG.errors import ProcessFailure, ValidationFailure
from KLOG.streaming.events import FilterData, FilterError, SessionEventBus
from KLOG.util import KeyedLocks

logger = logging.getLogger(__name__)

ALLOWED_COMMANDS = (
    'grep', 'awk', 'sed', 'cut', 'sort', 'uniq',
    'head', 'tail', 'jq', 'tr', 'wc', 'cat',
)

DANGEROUS_PATTERNS = [
    (re.compile(r'[;&`\n\r]'), "Command chaining characters are not allowed"),
    (re.compile(r'\$\('), "Subshells are not allowed"),
    (re.compile(r'<'), "Input redirection is not allowed"),
    (re.compile(r'\brm\b'), "The rm command is not allowed"),
    (re.compile(r'\bmv\b'), "The mv command is not allowed"),
    (re.compile(r'\bcp\b'), "The cp command is not allowed"),
    (re.compile(r'/dev/'), "Device access is not allowed"),
    (re.compile(r'\.\./'), "Parent directory access is not allowed"),
]

# Checked on the whole command: '|' only ever joins stages
OUTPUT_REDIRECT = re.compile(r'>')

# Allowed tools that can still run programs or write files
PROGRAM_PATTERNS = {
    'awk': [
        (re.compile(r'\bsystem\s*\('), "awk system() is not allowed"),
        (re.compile(r'\bgetline\b'), "awk getline is not allowed"),
    ],
    'sed': [
        (re.compile(r'(?:^|\s)(?:-[A-Za-z]*i|--in-place)'), "sed in-place editing is not allowed"),
        (re.compile(r'''(?:^|['"\s{}/$\d])[ewWrR](?:\s|['"]|$)'''),
         "sed e/w/r commands are not allowed"),
    ],
    'sort': [
        (re.compile(r'--compress-program|(?:^|\s)(?:-[A-Za-z]*o|--output)'),
         "sort output files and helper programs are not allowed"),
    ],
}

READ_SIZE = 4096
STOP_TIMEOUT = 1.0


class FilterResult(NamedTuple):
    success: bool
    error: Optional[str] = None


def validate_command(command: str) -> None:
    """
    Check every pipeline stage; raises ValidationFailure with the first reason found

    Args:
        command: Pipeline such as 'grep "ERROR" | grep -v "noisy"'
    """
    if not command or not command.strip():
        raise ValidationFailure("Command is empty")
    if OUTPUT_REDIRECT.search(command):
        raise ValidationFailure("Output redirection is not allowed")

    for part in command.split('|'):
        part = part.strip()
        if not part:
            raise ValidationFailure("Empty pipeline stage")

        program = part.split()[0]
        if program not in ALLOWED_COMMANDS:
            raise ValidationFailure(f"Command not allowed: {program}")

        for pattern, reason in DANGEROUS_PATTERNS:
            if pattern.search(part):
                raise ValidationFailure(reason)

        for pattern, reason in PROGRAM_PATTERNS.get(program, ()):
            if pattern.search(part):
                raise ValidationFailure(reason)


@dataclass
class FilterProcess:
    """A running filter pipeline owned by one session"""
    session_id: str
    command: str
    process: subprocess.Popen
    alive: bool = True
    threads: List[threading.Thread] = field(default_factory=list)
    write_lock: threading.Lock = field(default_factory=threading.Lock)


def terminate_tree(pid: int, timeout: float = STOP_TIMEOUT) -> None:
    """Terminate a process and all of its descendants, killing stragglers"""
    try:
        parent = psutil.Process(pid)
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return

    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass


class ShellFilter:
    """
    Filter sandbox: at most one live pipeline per session id

    Output is published on the event bus as FilterData / FilterError events for
    the owning session; the session's raw log stream is never affected.
    """

    def __init__(self, event_bus: SessionEventBus):
        self.event_bus = event_bus
        self._filters: Dict[str, FilterProcess] = {}
        self._lock = threading.Lock()
        self._id_locks = KeyedLocks()

    def start(self, session_id: str, command: str) -> FilterResult:
        """
        Validate and spawn a filter pipeline, replacing any existing one

        Returns:
            FilterResult(success, error) - nothing is spawned when validation fails
        """
        with self._id_locks.hold(session_id):
            self.stop(session_id)

            try:
                validate_command(command)
            except ValidationFailure as e:
                logger.warning(f"Filter for session {session_id} rejected: {e}")
                return FilterResult(False, str(e))

            try:
                process = subprocess.Popen(
                    ["sh", "-c", command],
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    bufsize=0,
                    start_new_session=True,
                )
            except OSError as e:
                error = ProcessFailure(f"Could not start filter: {e}")
                logger.error(f"Session {session_id}: {error}")
                return FilterResult(False, str(error))

            entry = FilterProcess(session_id=session_id, command=command, process=process)
            with self._lock:
                self._filters[session_id] = entry

            entry.threads = [
                threading.Thread(target=self._read_stream, args=(entry, process.stdout, FilterData),
                                 name=f"filter-out-{session_id}", daemon=True),
                threading.Thread(target=self._read_stream, args=(entry, process.stderr, FilterError),
                                 name=f"filter-err-{session_id}", daemon=True),
                threading.Thread(target=self._watch_exit, args=(entry,),
                                 name=f"filter-exit-{session_id}", daemon=True),
            ]
            for thread in entry.threads:
                thread.start()

            logger.info(f"Filter started for session {session_id} (pid {process.pid}): {command}")
            return FilterResult(True)

    def _is_registered(self, entry: FilterProcess) -> bool:
        with self._lock:
            return self._filters.get(entry.session_id) is entry

    def _read_stream(self, entry: FilterProcess, stream, event_type) -> None:
        """Relay one output pipe until EOF - runs in background thread"""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                chunk = stream.read(READ_SIZE)
            except (OSError, ValueError):
                break
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text and self._is_registered(entry):
                self._publish(event_type, entry.session_id, text)

        tail = decoder.decode(b"", final=True)
        if tail and self._is_registered(entry):
            self._publish(event_type, entry.session_id, tail)

    def _publish(self, event_type, session_id: str, text: str) -> None:
        if event_type is FilterData:
            self.event_bus.publish(FilterData(session_id=session_id, data=text))
        else:
            self.event_bus.publish(FilterError(session_id=session_id, error=text))

    def _watch_exit(self, entry: FilterProcess) -> None:
        code = entry.process.wait()
        entry.alive = False
        if not self._is_registered(entry):
            return

        logger.info(f"Filter for session {entry.session_id} exited with code {code}")
        if code is not None and code != 0:
            self.event_bus.publish(FilterError(
                session_id=entry.session_id,
                error=f"Filter process exited (code: {code})",
            ))

    def write(self, session_id: str, data: Union[bytes, str]) -> bool:
        """Feed log bytes to the session's filter stdin; False if no live filter"""
        with self._lock:
            entry = self._filters.get(session_id)
        if entry is None or not entry.alive or entry.process.poll() is not None:
            return False

        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            with entry.write_lock:
                entry.process.stdin.write(data)
                entry.process.stdin.flush()
            return True
        except (BrokenPipeError, OSError, ValueError):
            return False

    def stop(self, session_id: str) -> None:
        """Terminate the session's filter and release its pipes; idempotent"""
        with self._id_locks.hold(session_id):
            with self._lock:
                entry = self._filters.pop(session_id, None)
            if entry is None:
                return

            entry.alive = False
            try:
                entry.process.stdin.close()
            except (OSError, ValueError):
                pass

            terminate_tree(entry.process.pid)
            try:
                entry.process.wait(timeout=STOP_TIMEOUT)
            except subprocess.TimeoutExpired:
                entry.process.kill()

            for thread in entry.threads:
                if thread is not threading.current_thread():
                    thread.join(timeout=STOP_TIMEOUT)
            for stream in (entry.process.stdout, entry.process.stderr):
                try:
                    stream.close()
                except (OSError, ValueError):
                    pass

            logger.info(f"Filter stopped for session {session_id}")

    def stop_all(self) -> None:
        with self._lock:
            session_ids = list(self._filters)
        for session_id in session_ids:
            self.stop(session_id)

    def is_active(self, session_id: str) -> bool:
        with self._lock:
            entry = self._filters.get(session_id)
        return bool(entry and entry.alive)

    def get_command(self, session_id: str) -> Optional[str]:
        with self._lock:
            entry = self._filters.get(session_id)
        return entry.command if entry else None
