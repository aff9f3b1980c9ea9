# grabxkcd_core.py
# GRAB-XKCD CORE ENGINE
# Version: 1.0.0

"""
GRAB-XKCD CORE ENGINE
=====================
Incremental, thread-pooled mirror of the xkcd catalog into a local archive.

PIPELINE:
- Catalog probe: one fetch of the "latest" endpoint gives the upper bound
- Archive scan: one existence check per comic number, known gaps skipped
- Block split: optional fixed-size sequential batches
- Worker pool: at most `rate_limit` comics in flight at any instant
- Comic writer: one directory per comic, text files plus the image

A comic directory on disk is the only record of progress. Re-running the
engine recomputes the missing set from scratch.
"""

import threading
import time
import requests
from pathlib import Path
from queue import Queue, Empty
from concurrent.futures import ThreadPoolExecutor
from collections import deque
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any, FrozenSet, Iterable
from datetime import datetime

# =========================================================
# CONSTANTS
# =========================================================

XKCD_URL = "https://xkcd.com/"
JSON_FILE = "info.0.json"

# Image stream chunk size (128KB)
DOWNLOAD_CHUNK_SIZE = 131072

CONNECTION_TIMEOUT = 15

DEFAULT_RATE_LIMIT = 20
DEFAULT_ARCHIVE_DIR = "./xkcdDB/"

# xkcd 404 doesn't exist.
KNOWN_ABSENT = frozenset({404})

ALT_SUFFIX = "-alt"
TRANSCRIPT_SUFFIX = "-transcript"

USER_AGENT = "grab-xkcd/1.0 (Comic Archive Mirroring Tool)"

MAX_LOG_LINES = 50000


# =========================================================
# ERRORS
# =========================================================
class GrabXKCDError(Exception):
    """Base class for engine errors."""


class TransportError(GrabXKCDError):
    """Network, connection or HTTP status failure."""


class DecodeError(GrabXKCDError):
    """Response body does not look like a comic record."""


class FilesystemError(GrabXKCDError):
    """Directory or file could not be created or written. Fatal to the run."""


# =========================================================
# DATA MODEL
# =========================================================
@dataclass
class Comic:
    """
    One catalog entry as served by `info.0.json`.

    Transcript and alt are kept because they are what makes the archive
    searchable.
    """
    num: int
    img: str = ""
    transcript: str = ""
    alt: str = ""

    @classmethod
    def from_json(cls, data: Any) -> "Comic":
        """
        Build a Comic from a decoded JSON body.

        Raises:
            DecodeError: body is not an object, `num` is missing or not an
                integer, or a text field is not a string
        """
        if not isinstance(data, dict):
            raise DecodeError(f"expected a JSON object, got {type(data).__name__}")

        num = data.get("num")
        # bool is an int subclass
        if not isinstance(num, int) or isinstance(num, bool):
            raise DecodeError(f"missing or invalid 'num': {num!r}")

        fields = {}
        for key in ("img", "transcript", "alt"):
            value = data.get(key)
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise DecodeError(f"invalid '{key}' for comic {num}: {value!r}")
            fields[key] = value

        return cls(num=num, **fields)

    @property
    def image_name(self) -> str:
        """Last path segment of the image URL; empty means no image."""
        if not self.img:
            return ""
        return self.img.split("/")[-1]

    def text_files(self, num: int) -> Dict[str, str]:
        """File name -> content for every non-empty text field."""
        files = {}
        if self.alt:
            files[f"{num}{ALT_SUFFIX}"] = self.alt
        if self.transcript:
            files[f"{num}{TRANSCRIPT_SUFFIX}"] = self.transcript
        return files


@dataclass
class MirrorConfig:
    """Settings for one mirror run. Passed to the engine, never mutated by it."""

    archive_root: Path = Path(DEFAULT_ARCHIVE_DIR)
    rate_limit: int = DEFAULT_RATE_LIMIT
    block_size: Optional[int] = None
    base_url: str = XKCD_URL
    json_file: str = JSON_FILE
    known_absent: FrozenSet[int] = KNOWN_ABSENT
    timeout: float = CONNECTION_TIMEOUT
    log_file: Optional[Path] = None

    def __post_init__(self):
        self.archive_root = Path(self.archive_root)
        if self.log_file is not None:
            self.log_file = Path(self.log_file)
        self.known_absent = frozenset(self.known_absent)

        if self.rate_limit < 1:
            raise ValueError(f"rate_limit must be at least 1, got {self.rate_limit}")
        if self.block_size is not None and self.block_size < 1:
            raise ValueError(f"block_size must be at least 1, got {self.block_size}")

        # Add trailing /
        if not self.base_url.endswith("/"):
            self.base_url += "/"


@dataclass
class RunResult:
    """Outcome of one completed run."""

    latest_num: int
    missing_count: int
    items_done: int = 0
    items_failed: int = 0
    partial_items: List[int] = field(default_factory=list)


# =========================================================
# BLOCK SPLITTING
# =========================================================
def split_blocks(items: List[int], block_size: int) -> List[List[int]]:
    """
    Split a list into consecutive blocks of at most `block_size`.

    Order is preserved and only the last block may be short:
    205 items with a block size of 200 give blocks of 200 and 5.
    """
    if block_size < 1:
        raise ValueError(f"block_size must be at least 1, got {block_size}")
    return [items[i:i + block_size] for i in range(0, len(items), block_size)]


# =========================================================
# COMIC WRITER
# =========================================================
class ComicWriter:
    """
    Persists a single comic into `archive_root/<num>/`.

    Files are written in place: no temporary names, no cleanup. A failed
    image copy leaves a truncated file behind.
    """

    def __init__(self, archive_root: Path):
        self.archive_root = Path(archive_root)

    def item_dir(self, num: int) -> Path:
        return self.archive_root / str(num)

    def create_item_dir(self, num: int) -> Path:
        item_dir = self.item_dir(num)
        try:
            item_dir.mkdir()
        except OSError as e:
            raise FilesystemError(f"cannot create {item_dir}: {e}") from e
        return item_dir

    def write_metadata(self, num: int, comic: Comic, item_dir: Path) -> List[Path]:
        """Write alt and transcript text, skipping empty fields."""
        written = []
        for file_name, text in comic.text_files(num).items():
            path = item_dir / file_name
            try:
                with open(path, 'w', encoding='utf-8') as f:
                    f.write(text)
            except OSError as e:
                raise FilesystemError(f"cannot write {path}: {e}") from e
            written.append(path)
        return written

    def write_image(self, item_dir: Path, image_name: str, chunks: Iterable[bytes]) -> Path:
        """
        Stream image chunks to `item_dir/image_name`.

        Raises:
            TransportError: the stream broke while reading
            FilesystemError: the file could not be created or written
        """
        path = item_dir / image_name
        try:
            with open(path, 'wb') as f:
                for chunk in chunks:
                    if chunk:
                        f.write(chunk)
        # RequestException is an OSError, so it must be caught first
        except requests.RequestException as e:
            raise TransportError(f"image stream for {path} broke: {e}") from e
        except OSError as e:
            raise FilesystemError(f"cannot write {path}: {e}") from e
        return path


# =========================================================
# GRABXKCD CORE ENGINE CLASS
# =========================================================
class GrabXKCDCore:
    """
    Orchestrates probe, scan and the bounded worker pool.

    GUARANTEES:
    - At most `config.rate_limit` comics are in flight at any instant
    - A network or decode failure only abandons its own comic
    - A filesystem failure poisons the run: no new comics start and
      `run()` re-raises the FilesystemError once workers have joined
    """

    def __init__(self, config: MirrorConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.writer = ComicWriter(config.archive_root)

        # ===== THREADING PRIMITIVES =====
        self.stop_event = threading.Event()
        self.task_queue = Queue()
        self.run_thread = None
        self._run_result = None
        self._run_error = None

        # ===== SESSION =====
        self.session = session if session is not None else requests.Session()
        self.session.headers.update({'User-Agent': USER_AGENT})

        # ===== STATE TRACKING =====
        self.stats_lock = threading.Lock()
        self._reset_stats()

        # ===== EVENT LOG =====
        self.log_lock = threading.Lock()
        self.debug_log = deque(maxlen=MAX_LOG_LINES)
        self.log_file = config.log_file
        if self.log_file is not None and self.log_file.exists():
            self.log_file.unlink()

        self._log("Core Engine Initialized", "info")
        self._log(f"Archive Directory: {config.archive_root}", "info")
        self._log(f"Rate Limit: {config.rate_limit} | Block Size: {config.block_size or 'off'}", "info")

    def _reset_stats(self):
        with self.stats_lock:
            self.latest_num = 0
            self.missing_total = 0
            self.items_started = 0
            self.items_done = 0
            self.items_failed = 0
            self.partial_items = []
            self.active_workers = 0
            self.fatal_error = None

    def _log(self, message: str, level: str = "info"):
        """
        Thread-safe logging to the event stream and the debug file.

        Args:
            message: Log message
            level: info, success, warning, error or debug
        """
        timestamp = datetime.now().strftime("%H:%M:%S")
        formatted = f"[{timestamp}] [{level.upper()}] {message}"

        with self.log_lock:
            self.debug_log.append(formatted)
            if self.log_file is not None:
                try:
                    with open(self.log_file, 'a', encoding='utf-8') as f:
                        f.write(formatted + "\n")
                except OSError:
                    pass

    # ----- catalog access -----

    def _comic_url(self, num: Optional[int] = None) -> str:
        if num is None:
            return self.config.base_url + self.config.json_file
        return f"{self.config.base_url}{num}/{self.config.json_file}"

    def _get(self, url: str, stream: bool = False) -> requests.Response:
        try:
            response = self.session.get(url, stream=stream, timeout=self.config.timeout)
        except requests.RequestException as e:
            raise TransportError(f"GET {url} failed: {e}") from e
        try:
            response.raise_for_status()
        except requests.RequestException as e:
            response.close()
            raise TransportError(f"GET {url} failed: {e}") from e
        return response

    def fetch_comic_metadata(self, num: Optional[int] = None) -> Comic:
        """
        Fetch and decode one comic record; `num=None` fetches the latest.

        Raises:
            TransportError, DecodeError
        """
        url = self._comic_url(num)
        response = self._get(url)
        try:
            data = response.json()
        except ValueError as e:
            raise DecodeError(f"invalid JSON from {url}: {e}") from e
        finally:
            response.close()
        return Comic.from_json(data)

    def latest_comic_num(self) -> int:
        """The latest comic is used to find the number of comics."""
        comic = self.fetch_comic_metadata()
        self._log(f"Latest comic is #{comic.num}", "info")
        return comic.num

    # ----- archive -----

    def ensure_archive_root(self):
        root = self.config.archive_root
        if root.exists():
            if not root.is_dir():
                raise FilesystemError(f"{root} exists and is not a directory")
            return
        self._log(f"{root} does not exist. Creating...", "info")
        try:
            root.mkdir(parents=True)
        except OSError as e:
            raise FilesystemError(f"cannot create {root}: {e}") from e

    def missing_comics(self, num_comics: int) -> List[int]:
        """Comic numbers in 1..num_comics with no entry in the archive."""
        root = self.config.archive_root
        missing = []
        for num in range(1, num_comics + 1):
            if num in self.config.known_absent:
                continue
            if not (root / str(num)).exists():
                missing.append(num)
        return missing

    def archive_status(self) -> Dict[str, int]:
        """Probe and scan without fetching anything."""
        latest = self.latest_comic_num()
        missing = self.missing_comics(latest)
        expected = sum(1 for n in range(1, latest + 1) if n not in self.config.known_absent)
        return {
            "latest_num": latest,
            "archived": expected - len(missing),
            "missing": len(missing),
        }

    # ----- workers -----

    def _process_comic(self, num: int):
        """Fetch, decode and persist one comic. FilesystemError propagates."""
        self._log(f"Fetching Comic #{num} ...", "info")

        try:
            comic = self.fetch_comic_metadata(num)
        except TransportError as e:
            self._log(f"✗ Metadata fetch failed: Comic {num} - {e}", "error")
            self._record_failed()
            return
        except DecodeError as e:
            self._log(f"✗ JSON decoding error: Comic {num} - {e}", "error")
            self._record_failed()
            return

        if self.stop_event.is_set():
            return

        item_dir = self.writer.create_item_dir(num)
        self.writer.write_metadata(num, comic, item_dir)

        image_name = comic.image_name
        if not image_name:
            self._log(f"Comic {num} has no image.", "info")
            self._record_done(num)
            return

        try:
            response = self._get(comic.img, stream=True)
            try:
                self.writer.write_image(
                    item_dir, image_name,
                    response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE)
                )
            finally:
                response.close()
        except TransportError as e:
            self._log(f"✗ Image fetch failed: Comic {num} - {e}", "error")
            self._log(f"⚠ Comic {num} is partially archived and will not be retried", "warning")
            with self.stats_lock:
                self.partial_items.append(num)
            return

        self._record_done(num)

    def _record_done(self, num: int):
        with self.stats_lock:
            # Nothing counts as a success once the run is poisoned.
            if self.stop_event.is_set():
                return
            self.items_done += 1
        self._log(f"✓ Archived Comic #{num}", "success")

    def _record_failed(self):
        with self.stats_lock:
            self.items_failed += 1

    def _poison(self, error: FilesystemError):
        with self.stats_lock:
            if self.fatal_error is None:
                self.fatal_error = error
        self.stop_event.set()
        self._log(f"✗ Fatal filesystem error, stopping run: {error}", "error")

        while True:
            try:
                self.task_queue.get_nowait()
            except Empty:
                break
            self.task_queue.task_done()

    def _worker_loop(self):
        """Pull comic numbers until the queue is empty or the run is poisoned."""
        while not self.stop_event.is_set():
            try:
                num = self.task_queue.get_nowait()
            except Empty:
                return

            with self.stats_lock:
                self.items_started += 1
                self.active_workers += 1
            try:
                self._process_comic(num)
            except FilesystemError as e:
                self._poison(e)
            except Exception as e:
                self._log(f"Worker error on Comic #{num}: {e}", "error")
                self._record_failed()
            finally:
                with self.stats_lock:
                    self.active_workers -= 1
                self.task_queue.task_done()

    def _run_workers(self, nums: List[int]):
        """Fan out over `nums` and return once every worker has finished."""
        if not nums:
            return
        for num in nums:
            self.task_queue.put(num)

        workers = min(self.config.rate_limit, len(nums))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="grabxkcd") as executor:
            futures = [executor.submit(self._worker_loop) for _ in range(workers)]
            for future in futures:
                future.result()

    # ----- run control -----

    def run(self) -> RunResult:
        """
        Run the full pipeline once and block until it finishes.

        Raises:
            TransportError, DecodeError: the catalog probe failed
            FilesystemError: the archive could not be written
        """
        self.stop_event.clear()
        self._reset_stats()
        started = time.time()

        latest = self.latest_comic_num()
        self.ensure_archive_root()
        missing = self.missing_comics(latest)

        with self.stats_lock:
            self.latest_num = latest
            self.missing_total = len(missing)

        if not missing:
            self._log("Found no missing comics", "success")
            return RunResult(latest_num=latest, missing_count=0)

        self._log(f"Found {len(missing)} missing comics", "info")

        if self.config.block_size:
            # Divide missing comic numbers into blocks to bound open sockets.
            blocks = split_blocks(missing, self.config.block_size)
        else:
            blocks = [missing]

        for index, block in enumerate(blocks, start=1):
            if self.stop_event.is_set():
                break
            if len(blocks) > 1:
                self._log(f"Block {index}/{len(blocks)}: {len(block)} comics", "debug")
            self._run_workers(block)

        if self.fatal_error is not None:
            raise self.fatal_error

        with self.stats_lock:
            result = RunResult(
                latest_num=latest,
                missing_count=len(missing),
                items_done=self.items_done,
                items_failed=self.items_failed,
                partial_items=sorted(self.partial_items),
            )

        elapsed = time.time() - started
        self._log(
            f"Downloaded {result.items_done} of {result.missing_count} missing comics "
            f"in {elapsed:.1f}s", "success"
        )
        if result.partial_items:
            self._log(f"Partially archived comics: {result.partial_items}", "warning")
        return result

    def _run_in_background(self):
        try:
            self._run_result = self.run()
        except Exception as e:
            self._run_error = e
            self._log(f"Run aborted: {e}", "error")

    def start(self):
        """Start `run()` on a background thread. Use `wait()` for the result."""
        if self.is_running():
            raise RuntimeError("a run is already in progress")
        self._run_result = None
        self._run_error = None
        self.run_thread = threading.Thread(target=self._run_in_background, daemon=True)
        self.run_thread.start()

    def is_running(self) -> bool:
        return self.run_thread is not None and self.run_thread.is_alive()

    def wait(self, timeout: Optional[float] = None) -> Optional[RunResult]:
        """
        Join the background run.

        Returns:
            The RunResult, or None if `timeout` expired first

        Raises:
            Whatever error aborted the run
        """
        if self.run_thread is None:
            raise RuntimeError("no run has been started")
        self.run_thread.join(timeout)
        if self.run_thread.is_alive():
            return None
        if self._run_error is not None:
            raise self._run_error
        return self._run_result

    # ----- polling hooks -----

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of run progress for the CLI."""
        with self.stats_lock:
            finished = self.items_done + self.items_failed + len(self.partial_items)
            percent_complete = 0.0
            if self.missing_total > 0:
                percent_complete = (finished / self.missing_total) * 100
            return {
                "latest_num": self.latest_num,
                "missing_total": self.missing_total,
                "items_started": self.items_started,
                "items_done": self.items_done,
                "items_failed": self.items_failed,
                "items_partial": len(self.partial_items),
                "active_workers": self.active_workers,
                "queue_depth": self.task_queue.qsize(),
                "percent_complete": percent_complete,
                "fatal": self.fatal_error is not None,
                "running": self.is_running(),
            }

    def get_logs(self, from_index: int = 0):
        """
        Get log entries from a specific index.

        Returns:
            Tuple of (log_lines, new_index)
        """
        with self.log_lock:
            lines = list(self.debug_log)
        return lines[from_index:], len(lines)
