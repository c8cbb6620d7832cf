# Copyright (c) 2025 Joe Walter
# GNU General Public License v3.0

import sys
import argparse
import enum
import hashlib
import os
import stat
import shutil
import logging
import tempfile
import threading
import time
import traceback
from pathlib import Path
from collections import Counter, deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from queue import Empty, SimpleQueue
from typing import Iterator, NamedTuple

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)

_HASH_CHUNK_SIZE = 1024 * 1024

class _DebugInfoFilter(logging.Filter):
	'''Logging filter that only allows DEBUG and INFO records to pass.'''

	def filter(self, record):
		return logging.DEBUG <= record.levelno <= logging.INFO

class _ArgParser:
	'''Argument parser for when this python file is run with arguments instead of an imported module.'''

	common = argparse.ArgumentParser(add_help=False)
	common.add_argument("-j", "--jobs", metavar="n", type=int, default=None, help="The number of files copied or deleted at the same time. (Defaults to the number of logical CPUs.)")
	common.add_argument("--log", metavar="path", nargs="?", type=str, default=None, const="auto", help="The path of the log file to use. It will be created if it does not exist. With \"auto\" or no argument, a tempfile will be used for the log, and it will be moved to the user's home directory after the run is done. If this flag is absent, then no logging will be performed.")
	common.add_argument("--debug", action="store_true", default=False, help="Log debug messages.")
	common.add_argument("-v", "--verbose", action="store_true", default=False, help="Print one line for every directory and file processed.")
	common.add_argument("-q", action="count", default=0, help="Forgo printing to stdout (-q) and stderr (-qq).")

	parser = argparse.ArgumentParser(
		description="Backup or sync a directory to another directory, skipping files whose metadata and content did not change.",
		epilog="(c) 2025 Joe Walter"
	)
	commands = parser.add_subparsers(dest="command", metavar="command", required=True)

	backup = commands.add_parser("backup", parents=[common], help="Copy new and changed files from `src_root` to `dst_root`. Nothing is deleted.")
	backup.add_argument("src_root", help="The root directory to copy files from.")
	backup.add_argument("dst_root", help="The root directory to copy files to. It is created if missing.")

	sync = commands.add_parser("sync", parents=[common], help="Like backup, but also delete everything in `dst_root` that is not in `src_root`.")
	sync.add_argument("src_root", help="The root directory to copy files from.")
	sync.add_argument("dst_root", help="The root directory to copy files to. It is created if missing.")

	restore = commands.add_parser("restore", parents=[common], help="Copy new and changed files from the backup in `dst_root` back into `src_root`.")
	restore.add_argument("src_root", help="The root directory to restore into. It is created if missing.")
	restore.add_argument("dst_root", help="The root directory holding the backup.")
	restore.add_argument("-d", "--delete-files", action="store_true", default=False, help="Delete everything in `src_root` that is not in the backup.")

	@staticmethod
	def parse(args:list[str]) -> argparse.Namespace:
		parsed_args = _ArgParser.parser.parse_args(args)
		parsed_args.quiet     = parsed_args.q >= 1
		parsed_args.veryquiet = parsed_args.q >= 2
		del parsed_args.q
		return parsed_args

class ReadDirType(enum.Enum):
	FILES_ONLY       = "files"
	DIRECTORIES_ONLY = "directories"

class ErrorKind(enum.Enum):
	'''Reasons a single path could not be processed.'''

	CANNOT_CREATE_DESTINATION_DIR             = "cannot create destination directory"
	CANNOT_READ_DIRECTORY_CONTENT             = "cannot read directory content"
	CANNOT_GET_DIR_ENTRY                      = "cannot read directory entry"
	DESTINATION_FOR_SOURCE_DIR_EXISTS_AS_FILE = "destination for source directory exists but is not a directory"
	CANNOT_COPY_FILE                          = "cannot copy file"
	CANNOT_DELETE_DIRECTORY                   = "cannot delete directory"
	CANNOT_DELETE_FILE                        = "cannot delete file"
	INVARIANT_BROKEN                          = "path is not under its root directory, this is a bug"

class ProcessPathError(NamedTuple):
	'''A path that was not fully processed, and why.'''

	path        : Path
	kind        : ErrorKind
	destination : Path | None      = None
	error       : Exception | None = None

	@property
	def blocks_subtree(self) -> bool:
		'''Whether nothing below `path` can be mirrored after this error.'''
		return self.kind is not ErrorKind.CANNOT_GET_DIR_ENTRY

	def __str__(self) -> str:
		msg = f"{self.kind.value}: \"{self.path}\""
		if self.destination is not None:
			msg += f" -> \"{self.destination}\""
		if self.error is not None:
			msg += f" ({_error_summary(self.error)})"
		return msg

class Decision(enum.Enum):
	SKIP      = "skip"
	MUST_COPY = "must copy"

class Phase(enum.Enum):
	CREATE_DIRECTORIES = "Creating directories"
	COPY_FILES         = "Copying files"
	DELETE_DIRECTORIES = "Deleting directories"
	DELETE_FILES       = "Deleting files"

class Event(enum.Enum):
	'''Outcome of one step of a `Phase`.'''

	ALREADY_EXISTS          = "directory already exists"
	DIR_CREATED             = "created directory"
	SKIPPED_NO_MODIFICATION = "unchanged"
	FILE_COPIED             = "copied"
	SKIPPED_UNREACHABLE     = "skipped, parent directory could not be mirrored"
	DELETED_DIR             = "deleted directory"
	ALREADY_DELETED         = "already deleted"
	DELETED_FILE            = "deleted file"
	FAILED                  = "failed"

class WarningKind(enum.Enum):
	CANNOT_GET_METADATA       = "cannot get metadata"
	CANNOT_GET_HASH           = "cannot get hash"
	CANNOT_COPY_MODIFIED_TIME = "cannot copy modified time"
	PURGE_SKIPPED             = "purge skipped"

class InfoKind(enum.Enum):
	START_COPYING = "start copying"
	DELETED       = "deleted"

class WarningMessage(NamedTuple):
	kind : WarningKind
	text : str

class InfoMessage(NamedTuple):
	kind : InfoKind
	text : str

class ProgressStart(NamedTuple):
	phase : Phase
	total : int

class ProgressIncrement(NamedTuple):
	phase : Phase
	event : Event
	done  : int
	total : int
	path  : Path | None = None

class ProgressEnd(NamedTuple):
	phase : Phase
	done  : int
	total : int

class ErrorMessage(NamedTuple):
	error : ProcessPathError

Message = WarningMessage | InfoMessage | ProgressStart | ProgressIncrement | ProgressEnd | ErrorMessage

class MessageSink:
	'''
	Receiver of the messages emitted while a command runs.

	`send()` is called from several worker threads at once and must never block waiting for a reader.
	'''

	def send(self, message:Message) -> None:
		raise NotImplementedError

class NullSink(MessageSink):
	'''Sink that drops every message.'''

	def send(self, message:Message) -> None:
		pass

class QueueSink(MessageSink):
	'''Sink backed by a thread-safe queue. Once closed, further messages are dropped.'''

	def __init__(self) -> None:
		self._queue  : SimpleQueue[Message] = SimpleQueue()
		self._closed = False

	def send(self, message:Message) -> None:
		if not self._closed:
			self._queue.put(message)

	def close(self) -> None:
		self._closed = True

	def drain(self) -> list[Message]:
		'''Remove and return every message queued so far.'''

		messages = []
		while True:
			try:
				messages.append(self._queue.get_nowait())
			except Empty:
				return messages

class Results:
	'''Statistics and other information returned by `backup()`, `sync()` and `restore()`.'''

	def __init__(self) -> None:
		self.log_file : Path | None = None

		self.success  : bool        = False
		self.errors   : list[str]   = []
		self.warnings : list[str]   = []

		self.events   : Counter[tuple[Phase, Event]] = Counter()

	def count(self, phase:Phase, event:Event) -> int:
		return self.events[(phase, event)]

	@property
	def err_count(self) -> int:
		return len(self.errors)

class LoggingSink(MessageSink):
	'''Sink that writes messages to the module logger and tallies progress into a `Results`.'''

	def __init__(self, results:Results, *, verbose:bool = False):
		self.results = results
		self.verbose = verbose
		self._lock   = threading.Lock()

	def send(self, message:Message) -> None:
		level = logging.INFO if self.verbose else logging.DEBUG
		if isinstance(message, ProgressIncrement):
			with self._lock:
				self.results.events[(message.phase, message.event)] += 1
			if message.event is not Event.FAILED:
				logger.log(level, f"[{message.done}/{message.total}] {message.event.value}: {message.path}")
		elif isinstance(message, ProgressStart):
			logger.log(level, f"{message.phase.value} ({message.total})")
		elif isinstance(message, ProgressEnd):
			logger.debug(f"{message.phase.value} done: {message.done}/{message.total}")
		elif isinstance(message, InfoMessage):
			logger.debug(message.text)
		elif isinstance(message, WarningMessage):
			with self._lock:
				self.results.warnings.append(message.text)
			logger.warning(message.text)
		elif isinstance(message, ErrorMessage):
			logger.error(str(message.error))

class SafeallError(Exception):
	'''Base class for errors that end a command.'''

class SourceRootPathDoesNotExist(SafeallError):
	'''The directory files are copied from is missing. For `Restore` this is the backup directory.'''

	def __init__(self, path:Path, role:str = "source"):
		self.path = path
		self.role = role
		super().__init__(f"The {role} directory \"{path}\" does not exist")

class CannotCreateRootDestinationDir(SafeallError):
	def __init__(self, path:Path, error:OSError):
		self.path  = path
		self.error = error
		super().__init__(f"Cannot create the destination directory \"{path}\" ({_error_summary(error)})")

class RootDestinationIsNotADirectory(SafeallError):
	def __init__(self, path:Path):
		self.path = path
		super().__init__(f"The destination \"{path}\" is not a directory")

class ProcessPathErrors(SafeallError):
	'''Raised at the end of a command when some paths could not be processed. Everything else was.'''

	def __init__(self, errors:list[ProcessPathError]):
		self.errors = list(errors)
		super().__init__("\n".join(str(e) for e in self.errors))

class Backup(NamedTuple):
	source_root      : Path
	destination_root : Path

class Sync(NamedTuple):
	source_root      : Path
	destination_root : Path

class Restore(NamedTuple):
	source_root      : Path
	destination_root : Path
	delete_files     : bool = False

Command = Backup | Sync | Restore

def run_cmd(args:list[str]) -> Results:
	'''Run `backup()`, `sync()` or `restore()` with command line arguments.'''

	parsed_args = _ArgParser.parse(args)
	options = dict(
		workers   = parsed_args.jobs,
		log       = parsed_args.log,
		debug     = parsed_args.debug,
		verbose   = parsed_args.verbose,
		quiet     = parsed_args.quiet,
		veryquiet = parsed_args.veryquiet,
	)
	if parsed_args.command == "backup":
		return backup(parsed_args.src_root, parsed_args.dst_root, **options)
	elif parsed_args.command == "sync":
		return sync(parsed_args.src_root, parsed_args.dst_root, **options)
	else:
		return restore(parsed_args.src_root, parsed_args.dst_root, delete_files=parsed_args.delete_files, **options)

def backup(src:str | os.PathLike[str], dst:str | os.PathLike[str], **options) -> Results:
	'''
	Copies new and changed files from `src` to `dst`, recreating the directory structure of `src` under `dst`. Nothing in `dst` is deleted. A file is left alone when its size, modification time, type and permission bits match and both copies hash the same.

	Args
		src (str or PathLike)  : The path of the root directory to copy files from.
		dst (str or PathLike)  : The path of the root directory to copy files to. It is created if it does not exist.

		workers (int)          : The number of files copied or deleted at the same time. (Defaults to the number of logical CPUs.)
		log (str or PathLike)  : The path of the log file to use. It will be created if it does not exist. A value of "auto" means a tempfile will be used for the log, and it will be copied to the user's home directory after the run is done. A value of `None` will skip logging to a file. (Defaults to `None`.)
		debug (bool)           : Whether to log debug messages. (Default to `False`.)
		verbose (bool)         : Whether to print a line for every directory and file processed. (Default to `False`.)
		quiet (bool)           : Whether to forgo printing to stdout.
		veryquiet (bool)       : Whether to forgo printing to stdout and stderr.

	Example Console Output
		   path/to/src
		-> path/to/dst
		--------------

		*** safeall finished successfully. ***

		Summary
		-------
		Directories Created: 2
		Files Copied: 5
		Files Unchanged: 120
		Directories Deleted: 0
		Files Deleted: 0

	Returns
		A `Results` object containing various statistics.
	'''
	return _run_logged(Backup(src, dst), **options)

def sync(src:str | os.PathLike[str], dst:str | os.PathLike[str], **options) -> Results:
	'''Like `backup()`, then deletes every directory and file in `dst` that has no counterpart in `src`. Takes the same options.'''
	return _run_logged(Sync(src, dst), **options)

def restore(src:str | os.PathLike[str], dst:str | os.PathLike[str], *, delete_files:bool = False, **options) -> Results:
	'''
	Copies new and changed files from the backup in `dst` back into `src`. If `delete_files` is `True`, everything in `src` that is not in the backup is deleted afterwards. Takes the same options as `backup()`.
	'''
	return _run_logged(Restore(src, dst, delete_files), **options)

def _run_logged(
		command   : Command,
		*,
		workers   : int | None = None,
		log       : str | os.PathLike[str] | None = None,
		debug     : bool = False,
		verbose   : bool = False,
		quiet     : bool = False,
		veryquiet : bool = False,
	) -> Results:
	'''Set up the log handlers, run `command` and log a summary. Never raises, the outcome is in the returned `Results`.'''

	results = Results()

	if logger.handlers:
		for handler in list(logger.handlers):
			logger.removeHandler(handler)

	log_file       = None
	tmp_log_file   = None
	handler_stdout = None
	handler_stderr = None
	handler_file   = None

	if veryquiet:
		quiet = True

	if not quiet:
		handler_stdout = logging.StreamHandler(sys.stdout)
		handler_stdout.setFormatter(logging.Formatter("%(message)s"))
		handler_stdout.addFilter(_DebugInfoFilter())
		if debug:
			handler_stdout.setLevel(logging.DEBUG)
		else:
			handler_stdout.setLevel(logging.INFO)
		logger.addHandler(handler_stdout)

	if not veryquiet:
		handler_stderr = logging.StreamHandler(sys.stderr)
		handler_stderr.setFormatter(logging.Formatter("%(message)s"))
		handler_stderr.setLevel(logging.WARNING)
		logger.addHandler(handler_stderr)

	try:
		if not isinstance(command.source_root, (str, os.PathLike)):
			msg = f"Bad type for arg 'src' (expected str or PathLike): {command.source_root}"
			raise TypeError(msg)
		if not isinstance(command.destination_root, (str, os.PathLike)):
			msg = f"Bad type for arg 'dst' (expected str or PathLike): {command.destination_root}"
			raise TypeError(msg)
		if isinstance(command, Restore) and not isinstance(command.delete_files, bool):
			msg = f"Bad type for arg 'delete_files' (expected bool): {command.delete_files}"
			raise TypeError(msg)
		if workers is not None and not isinstance(workers, int):
			msg = f"Bad type for arg 'workers' (expected int): {workers}"
			raise TypeError(msg)
		if log is not None and not isinstance(log, (str, os.PathLike)):
			msg = f"Bad type for arg 'log' (expected str or PathLike): {log}"
			raise TypeError(msg)
		if not isinstance(verbose, bool):
			msg = f"Bad type for arg 'verbose' (expected bool): {verbose}"
			raise TypeError(msg)
		if not isinstance(quiet, bool):
			msg = f"Bad type for arg 'quiet' (expected bool): {quiet}"
			raise TypeError(msg)
		if not isinstance(veryquiet, bool):
			msg = f"Bad type for arg 'veryquiet' (expected bool): {veryquiet}"
			raise TypeError(msg)

		if workers is not None and workers < 1:
			msg = f"workers must be at least 1: {workers}"
			raise ValueError(msg)

		if log is None:
			log_file = None
		elif log == "auto":
			timestamp = str(int(time.time()*1000))
			log_file = Path.home() / f"safeall.{timestamp}.log"
		else:
			log_file = Path(log)
		results.log_file = log_file

		if log_file is not None and os.path.exists(log_file):
			msg = f"Chosen log already exists: {log_file}"
			raise ValueError(msg)

		if log_file is not None:
			with tempfile.NamedTemporaryFile(mode="w+", encoding="utf-8", delete=False) as tmp_log:
				tmp_log_file = Path(tmp_log.name)
			formatter = logging.Formatter("%(levelname)s: %(message)s")
			handler_file = logging.FileHandler(tmp_log_file, encoding="utf-8")
			handler_file.setFormatter(formatter)
			if debug:
				handler_file.setLevel(logging.DEBUG)
			else:
				handler_file.setLevel(logging.INFO)
			logger.addHandler(handler_file)

		logger.debug(f"Starting {type(command).__name__.lower()}: {command=} {workers=} {log_file=} {debug=} {verbose=} {quiet=} {veryquiet=}")

		if isinstance(command, Restore):
			copy_from, copy_to = command.destination_root, command.source_root
		else:
			copy_from, copy_to = command.source_root, command.destination_root
		width = max(len(str(copy_from)), len(str(copy_to))) + 3
		logger.info("   " + str(copy_from))
		logger.info("-> " + str(copy_to))
		logger.info("-" * width)

		run(command, LoggingSink(results, verbose=verbose), workers=workers)

		logger.info("")
		logger.info("*** safeall finished successfully. ***")

		results.success = True

	except KeyboardInterrupt:
		logger.critical(f"Cancelled by user.")
	except ProcessPathErrors as e:
		# each error was already logged when it happened
		results.errors.extend(str(error) for error in e.errors)
		logger.info("")
		logger.info("*** safeall finished with errors. ***")
	except SafeallError as e:
		results.errors.append(str(e))
		logger.critical(f"Error: {e}")
	except (TypeError, ValueError) as e:
		results.errors.append(str(e))
		logger.critical(f"Input Error: {e}")
	except Exception as e:
		results.errors.append(_error_summary(e))
		logger.critical("Unexpected error: " + _error_summary(e))
		logger.critical(traceback.format_exc())

	finally:
		logger.info("")
		logger.info("Summary")
		logger.info("-------")
		logger.info(_summary_line("Directories Created", results.count(Phase.CREATE_DIRECTORIES, Event.DIR_CREATED), results.count(Phase.CREATE_DIRECTORIES, Event.FAILED)))
		logger.info(_summary_line("Files Copied", results.count(Phase.COPY_FILES, Event.FILE_COPIED), results.count(Phase.COPY_FILES, Event.FAILED)))
		logger.info(_summary_line("Files Unchanged", results.count(Phase.COPY_FILES, Event.SKIPPED_NO_MODIFICATION), 0))
		logger.info(_summary_line("Directories Deleted", results.count(Phase.DELETE_DIRECTORIES, Event.DELETED_DIR), results.count(Phase.DELETE_DIRECTORIES, Event.FAILED)))
		logger.info(_summary_line("Files Deleted", results.count(Phase.DELETE_FILES, Event.DELETED_FILE), results.count(Phase.DELETE_FILES, Event.FAILED)))

		if results.warnings:
			logger.info("")
			logger.info(f"There were {len(results.warnings)} warnings.")

		if results.err_count:
			logger.info("")
			logger.info(f"There were {results.err_count} errors.")
			if results.err_count <= 10:
				logger.info("Errors are reprinted below for convenience.")
				for error in results.errors:
					logger.info(error)

		if log_file:
			logger.info("")
			logger.info(f"Log file: {log_file}")

		if handler_stdout:
			logger.removeHandler(handler_stdout)

		if handler_stderr:
			logger.removeHandler(handler_stderr)

		if handler_file:
			logger.removeHandler(handler_file)
			handler_file.close()
			assert tmp_log_file is not None
			assert log_file is not None
			shutil.move(tmp_log_file, log_file)

	return results

def _summary_line(label:str, success:int, failed:int) -> str:
	'''
	>>> _summary_line("Files Copied", 3, 0)
	'Files Copied: 3'
	>>> _summary_line("Files Copied", 3, 2)
	'Files Copied: 3 / Failed: 2'
	'''
	return f"{label}: {success}" + (f" / Failed: {failed}" if failed else "")

def run(command:Command, sink:MessageSink | None = None, *, workers:int | None = None) -> None:
	'''
	Run a `Backup`, `Sync` or `Restore` command.

	Root paths are validated first, and a problem with them raises straight away, before anything is touched. After that, a path that cannot be processed does not stop the command: everything else is still done, and all such failures are raised together as `ProcessPathErrors` at the end.

	Args
		command (Command)    : What to do, and with which root directories.
		sink (MessageSink)   : Receives the warnings, progress and errors as they happen. (Defaults to dropping them.)
		workers (int)        : The number of files copied or deleted at the same time. (Defaults to the number of logical CPUs.)
	'''

	if sink is None:
		sink = NullSink()
	source_root      = Path(command.source_root).absolute()
	destination_root = Path(command.destination_root).absolute()

	if isinstance(command, Backup):
		validate_root_paths(source_root, destination_root)
		errors = _mirror(source_root, destination_root, sink, workers)
	elif isinstance(command, Sync):
		validate_root_paths(source_root, destination_root)
		errors = _mirror(source_root, destination_root, sink, workers)
		errors += purge(source_root, destination_root, sink, workers=workers)
	elif isinstance(command, Restore):
		# the backup in destination_root is what gets copied
		validate_root_paths(destination_root, source_root, source_role="backup")
		errors = _mirror(destination_root, source_root, sink, workers)
		if command.delete_files:
			errors += purge(destination_root, source_root, sink, workers=workers)
	else:
		raise TypeError(f"Unknown command: {command!r}")

	if errors:
		raise ProcessPathErrors(errors)

def validate_root_paths(source_root:Path, destination_root:Path, *, source_role:str = "source") -> None:
	'''Check that `source_root` exists and that `destination_root` is a directory, creating it (and its parents) if missing.'''

	if not source_root.exists():
		raise SourceRootPathDoesNotExist(source_root, source_role)
	if not destination_root.exists():
		try:
			os.makedirs(destination_root)
		except OSError as e:
			raise CannotCreateRootDestinationDir(destination_root, e) from e
	if not destination_root.is_dir():
		raise RootDestinationIsNotADirectory(destination_root)

def _mirror(source_root:Path, destination_root:Path, sink:MessageSink, workers:int | None) -> list[ProcessPathError]:
	errors = create_tree(source_root, destination_root, sink)
	unreachable_dirs = [error.path for error in errors if error.blocks_subtree]
	errors += backup_files(source_root, destination_root, unreachable_dirs, sink, workers=workers)
	return errors

class PathWalker:
	'''
	Lazy breadth-first walk of the tree under `root`.

	Yields a `Path` for every file (`ReadDirType.FILES_ONLY`) or every directory (`ReadDirType.DIRECTORIES_ONLY`) below `root`, and a `ProcessPathError` for every directory or entry that could not be read. `root` itself is never yielded. Directories are read first-in first-out, so a directory is always yielded before anything below it. Symbolic links are not followed, they are reported as files.

	A walker is single-pass. Make a new one to walk the same tree again.
	'''

	def __init__(self, root:str | os.PathLike[str], mode:ReadDirType):
		self.root  = Path(root)
		self.mode  = mode
		self._pending     : deque[Path] = deque([self.root])
		self._current     : Iterator[os.DirEntry[str]] | None = None
		self._current_dir : Path | None = None

	def __iter__(self) -> "PathWalker":
		return self

	def __next__(self) -> Path | ProcessPathError:
		while True:
			if self._current is None:
				if not self._pending:
					raise StopIteration
				opened = self._open_next()
				if opened is not None:
					return opened
				continue

			assert self._current_dir is not None
			try:
				entry = next(self._current)
			except StopIteration:
				self._close_current()
				continue
			except OSError as e:
				# a directory handle cannot be read from again after an error
				directory = self._current_dir
				self._close_current()
				return ProcessPathError(directory, ErrorKind.CANNOT_GET_DIR_ENTRY, error=e)

			try:
				is_dir = entry.is_dir(follow_symlinks=False)
			except OSError as e:
				return ProcessPathError(self._current_dir, ErrorKind.CANNOT_GET_DIR_ENTRY, error=e)

			path = Path(entry.path)
			if is_dir:
				self._pending.append(path)
			elif self.mode is ReadDirType.FILES_ONLY:
				return path

	def _open_next(self) -> Path | ProcessPathError | None:
		directory = self._pending.popleft()
		try:
			self._current = os.scandir(directory)
		except OSError as e:
			return ProcessPathError(directory, ErrorKind.CANNOT_READ_DIRECTORY_CONTENT, error=e)
		self._current_dir = directory
		if self.mode is ReadDirType.DIRECTORIES_ONLY and directory != self.root:
			return directory
		return None

	def _close_current(self) -> None:
		if self._current is not None:
			self._current.close()
		self._current     = None
		self._current_dir = None

class FileMetadata(NamedTuple):
	'''File metadata that must match before two files are hashed and compared.'''

	modified    : int
	length      : int
	file_type   : int
	permissions : int

	@classmethod
	def of(cls, path:Path) -> "FileMetadata | None":
		try:
			st = os.stat(path)
		except OSError:
			return None
		return cls(
			modified    = st.st_mtime_ns,
			length      = st.st_size,
			file_type   = stat.S_IFMT(st.st_mode),
			permissions = stat.S_IMODE(st.st_mode),
		)

def content_hash(path:Path) -> bytes | None:
	'''SHA-256 digest of the content of `path`, or `None` if it cannot be read.'''

	hasher = hashlib.sha256()
	try:
		with open(path, "rb") as f:
			while True:
				buf = f.read(_HASH_CHUNK_SIZE)
				if not buf:
					break
				hasher.update(buf)
	except OSError:
		return None
	return hasher.digest()

def decide(source:Path, destination:Path, sink:MessageSink) -> Decision:
	'''
	Whether `destination` already holds the same file as `source`.

	Metadata (modification time, size, type and permission bits) is compared first, and only when it matches are both files hashed. Whenever something cannot be read, the file is copied anyway.
	'''

	try:
		os.stat(destination)
	except (FileNotFoundError, NotADirectoryError):
		return Decision.MUST_COPY
	except OSError as e:
		# an unreadable destination has no metadata, which is reported below
		logger.debug(f"Cannot stat \"{destination}\" ({_error_summary(e)})")

	source_metadata      = FileMetadata.of(source)
	destination_metadata = FileMetadata.of(destination)
	if (source_metadata is None) != (destination_metadata is None):
		sink.send(WarningMessage(WarningKind.CANNOT_GET_METADATA, f"Cannot get the metadata of either \"{source}\" or \"{destination}\", copying anyway."))
		return Decision.MUST_COPY
	if source_metadata != destination_metadata:
		return Decision.MUST_COPY

	source_hash      = content_hash(source)
	destination_hash = content_hash(destination)
	if source_hash is None or destination_hash is None:
		sink.send(WarningMessage(WarningKind.CANNOT_GET_HASH, f"Cannot hash either \"{source}\" or \"{destination}\", copying anyway."))
		return Decision.MUST_COPY
	if source_hash != destination_hash:
		return Decision.MUST_COPY
	return Decision.SKIP

class _Progress:
	'''Done/total counter of one `Phase`, shared by the worker threads.'''

	def __init__(self, phase:Phase, total:int, sink:MessageSink):
		self.phase = phase
		self.total = total
		self.sink  = sink
		self.done  = 0
		self._lock = threading.Lock()

	def start(self) -> None:
		self.sink.send(ProgressStart(self.phase, self.total))

	def increment(self, event:Event, path:Path | None = None) -> None:
		with self._lock:
			self.done += 1
			done = self.done
		self.sink.send(ProgressIncrement(self.phase, event, done, self.total, path))

	def fail(self, error:ProcessPathError) -> ProcessPathError:
		self.sink.send(ErrorMessage(error))
		self.increment(Event.FAILED, error.path)
		return error

	def end(self) -> None:
		self.sink.send(ProgressEnd(self.phase, self.done, self.total))

class _BoundedPool:
	'''
	Thread pool that keeps at most `workers` tasks queued or running at once, so walking a large tree does not queue one task per file.

	Each task returns a `ProcessPathError` or `None`. The errors are in `errors` once the `with` block exits.
	'''

	def __init__(self, workers:int | None):
		self.workers  = _worker_count(workers)
		self.errors   : list[ProcessPathError] = []
		self._pending : set[Future] = set()
		self._executor = ThreadPoolExecutor(max_workers=self.workers)

	def __enter__(self) -> "_BoundedPool":
		return self

	def __exit__(self, exc_type, exc, tb) -> None:
		try:
			if exc_type is None:
				self._collect(wait(self._pending).done)
				self._pending = set()
		finally:
			self._executor.shutdown()

	def submit(self, fn, *args) -> None:
		if len(self._pending) >= self.workers:
			done, self._pending = wait(self._pending, return_when=FIRST_COMPLETED)
			self._collect(done)
		self._pending.add(self._executor.submit(fn, *args))

	def _collect(self, done:set[Future]) -> None:
		for future in done:
			error = future.result()
			if error is not None:
				self.errors.append(error)

def create_tree(source_root:str | os.PathLike[str], destination_root:str | os.PathLike[str], sink:MessageSink) -> list[ProcessPathError]:
	'''
	Recreates every directory under `source_root` under `destination_root`, parents before children.

	A directory whose counterpart cannot be created (or exists as a file) is reported once, and nothing below it is attempted. The returned errors tell which source subtrees have no counterpart.
	'''

	source_root      = Path(source_root)
	destination_root = Path(destination_root)
	progress = _Progress(Phase.CREATE_DIRECTORIES, _count_paths(source_root, ReadDirType.DIRECTORIES_ONLY), sink)
	progress.start()

	errors      : list[ProcessPathError] = []
	unreachable : list[Path]             = []
	for item in PathWalker(source_root, ReadDirType.DIRECTORIES_ONLY):
		if isinstance(item, ProcessPathError):
			if _is_under(item.path, unreachable):
				continue
			sink.send(ErrorMessage(item))
			error = item
		elif _is_under(item, unreachable):
			progress.increment(Event.SKIPPED_UNREACHABLE, item)
			continue
		else:
			error = _create_single_directory(source_root, destination_root, item, progress)
			if error is None:
				continue
			progress.fail(error)

		errors.append(error)
		if error.blocks_subtree:
			unreachable.append(error.path)

	progress.end()
	logger.debug(f"{unreachable=}")
	return errors

def _create_single_directory(source_root:Path, destination_root:Path, source_dir:Path, progress:_Progress) -> ProcessPathError | None:
	try:
		destination_dir = _destination_path(source_root, destination_root, source_dir)
	except ValueError as e:
		return ProcessPathError(source_dir, ErrorKind.INVARIANT_BROKEN, error=e)

	try:
		st = os.stat(destination_dir)
	except FileNotFoundError:
		st = None
	except OSError as e:
		return ProcessPathError(source_dir, ErrorKind.CANNOT_CREATE_DESTINATION_DIR, destination_dir, e)

	if st is not None:
		if not stat.S_ISDIR(st.st_mode):
			return ProcessPathError(source_dir, ErrorKind.DESTINATION_FOR_SOURCE_DIR_EXISTS_AS_FILE, destination_dir)
		progress.increment(Event.ALREADY_EXISTS, source_dir)
		return None

	try:
		destination_dir.mkdir()
	except OSError as e:
		return ProcessPathError(source_dir, ErrorKind.CANNOT_CREATE_DESTINATION_DIR, destination_dir, e)
	progress.increment(Event.DIR_CREATED, source_dir)
	return None

def backup_files(
		source_root      : str | os.PathLike[str],
		destination_root : str | os.PathLike[str],
		unreachable_dirs : list[Path],
		sink             : MessageSink,
		*,
		workers          : int | None = None,
	) -> list[ProcessPathError]:
	'''
	Copies every file under `source_root` whose counterpart under `destination_root` is missing or different.

	Files below `unreachable_dirs` are skipped, their directory already failed. The copies run on a pool of `workers` threads.
	'''

	source_root      = Path(source_root)
	destination_root = Path(destination_root)
	unreachable_dirs = [Path(d) for d in unreachable_dirs]
	progress = _Progress(Phase.COPY_FILES, _count_paths(source_root, ReadDirType.FILES_ONLY), sink)
	progress.start()

	errors : list[ProcessPathError] = []
	with _BoundedPool(workers) as pool:
		for item in PathWalker(source_root, ReadDirType.FILES_ONLY):
			if isinstance(item, ProcessPathError):
				# unreadable directories were already reported while mirroring
				if not _is_under(item.path, unreachable_dirs):
					sink.send(ErrorMessage(item))
					errors.append(item)
				continue
			if _is_under(item, unreachable_dirs):
				progress.increment(Event.SKIPPED_UNREACHABLE, item)
				continue
			pool.submit(_backup_single_file, source_root, destination_root, item, progress)
	errors += pool.errors

	progress.end()
	return errors

def _backup_single_file(source_root:Path, destination_root:Path, source_file:Path, progress:_Progress) -> ProcessPathError | None:
	sink = progress.sink
	try:
		destination_file = _destination_path(source_root, destination_root, source_file)
	except ValueError as e:
		return progress.fail(ProcessPathError(source_file, ErrorKind.INVARIANT_BROKEN, error=e))

	if decide(source_file, destination_file, sink) is Decision.SKIP:
		progress.increment(Event.SKIPPED_NO_MODIFICATION, source_file)
		return None

	sink.send(InfoMessage(InfoKind.START_COPYING, f"Copying \"{source_file}\" to \"{destination_file}\""))
	try:
		_copy(source_file, destination_file)
	except OSError as e:
		return progress.fail(ProcessPathError(source_file, ErrorKind.CANNOT_COPY_FILE, destination_file, e))
	progress.increment(Event.FILE_COPIED, source_file)

	try:
		_copy_modified_time(source_file, destination_file)
	except OSError as e:
		sink.send(WarningMessage(WarningKind.CANNOT_COPY_MODIFIED_TIME, f"Could not copy the modified time of \"{source_file}\" to \"{destination_file}\" ({_error_summary(e)})"))
	return None

def purge(
		source_root      : str | os.PathLike[str],
		destination_root : str | os.PathLike[str],
		sink             : MessageSink,
		*,
		workers          : int | None = None,
	) -> list[ProcessPathError]:
	'''
	Deletes every directory and file under `destination_root` that has no counterpart under `source_root`.

	Both trees are walked before anything is deleted. Stale directories are removed whole, outermost first, and whatever was inside them is not deleted again. If `source_root` could not be fully walked, nothing is deleted from the part (directories or files) whose walk failed.
	'''

	source_root      = Path(source_root)
	destination_root = Path(destination_root)

	roots = [source_root, destination_root, source_root, destination_root]
	modes = [ReadDirType.DIRECTORIES_ONLY] * 2 + [ReadDirType.FILES_ONLY] * 2
	with ThreadPoolExecutor(max_workers=len(roots)) as executor:
		source_dirs, destination_dirs, source_files, destination_files = executor.map(_relative_paths, roots, modes)

	errors : list[ProcessPathError] = []
	stale_dirs  = _stale_paths(destination_root, source_dirs, destination_dirs, sink, errors)
	stale_files = _stale_paths(destination_root, source_files, destination_files, sink, errors)
	logger.debug(f"{stale_dirs=}")
	logger.debug(f"{stale_files=}")

	progress = _Progress(Phase.DELETE_DIRECTORIES, len(stale_dirs), sink)
	progress.start()
	deleted_dirs : list[Path] = []
	for directory in stale_dirs:
		if _is_under(directory, deleted_dirs):
			progress.increment(Event.ALREADY_DELETED, directory)
			continue
		try:
			shutil.rmtree(directory)
		except FileNotFoundError:
			# gone already, nothing left to delete
			pass
		except OSError as e:
			errors.append(progress.fail(ProcessPathError(directory, ErrorKind.CANNOT_DELETE_DIRECTORY, error=e)))
			continue
		deleted_dirs.append(directory)
		sink.send(InfoMessage(InfoKind.DELETED, f"Deleted \"{directory}\""))
		progress.increment(Event.DELETED_DIR, directory)
	progress.end()

	progress = _Progress(Phase.DELETE_FILES, len(stale_files), sink)
	progress.start()
	with _BoundedPool(workers) as pool:
		for file in stale_files:
			if _is_under(file, deleted_dirs):
				progress.increment(Event.ALREADY_DELETED, file)
				continue
			pool.submit(_delete_single_file, file, progress)
	errors += pool.errors
	progress.end()

	return errors

def _relative_paths(root:Path, mode:ReadDirType) -> tuple[set[Path], list[ProcessPathError]]:
	'''Walk `root` and collect the paths found relative to it, along with the walk errors.'''

	paths  : set[Path]              = set()
	errors : list[ProcessPathError] = []
	for item in PathWalker(root, mode):
		if isinstance(item, ProcessPathError):
			errors.append(item)
			continue
		try:
			paths.add(item.relative_to(root))
		except ValueError as e:
			errors.append(ProcessPathError(item, ErrorKind.INVARIANT_BROKEN, error=e))
	return paths, errors

def _stale_paths(
		destination_root : Path,
		counterpart      : tuple[set[Path], list[ProcessPathError]],
		own              : tuple[set[Path], list[ProcessPathError]],
		sink             : MessageSink,
		errors           : list[ProcessPathError],
	) -> list[Path]:
	'''
	Absolute paths of `own` that are not in `counterpart`, sorted so that a directory comes before its contents. Walk errors are reported and added to `errors`. Returns nothing if the counterpart walk had errors.
	'''

	counterpart_paths, counterpart_errors = counterpart
	own_paths, own_errors = own
	for error in counterpart_errors + own_errors:
		sink.send(ErrorMessage(error))
		errors.append(error)

	if counterpart_errors:
		sink.send(WarningMessage(WarningKind.PURGE_SKIPPED, f"Not deleting anything from \"{destination_root}\" because the other directory could not be read completely."))
		return []

	return sorted(destination_root / relpath for relpath in own_paths - counterpart_paths)

def _delete_single_file(file:Path, progress:_Progress) -> ProcessPathError | None:
	try:
		file.unlink(missing_ok=True)
	except OSError as e:
		return progress.fail(ProcessPathError(file, ErrorKind.CANNOT_DELETE_FILE, error=e))
	progress.sink.send(InfoMessage(InfoKind.DELETED, f"Deleted \"{file}\""))
	progress.increment(Event.DELETED_FILE, file)
	return None

def _count_paths(root:Path, mode:ReadDirType) -> int:
	return sum(1 for item in PathWalker(root, mode) if not isinstance(item, ProcessPathError))

def _worker_count(workers:int | None) -> int:
	if workers is None:
		return os.cpu_count() or 1
	return max(1, workers)

def _destination_path(source_root:Path, destination_root:Path, path:Path) -> Path:
	'''
	Maps `path` under `source_root` to the same place under `destination_root`. Raises `ValueError` if `path` is not under `source_root`.

	>>> _destination_path(Path("/src"), Path("/dst"), Path("/src/some/file.txt")).as_posix()
	'/dst/some/file.txt'
	>>> _destination_path(Path("/src"), Path("/dst"), Path("/elsewhere/file.txt")) # doctest: +ELLIPSIS
	Traceback (most recent call last):
	...
	ValueError: ...
	'''
	return destination_root / path.relative_to(source_root)

def _is_under(path:Path, directories:list[Path]) -> bool:
	'''
	Whether `path` is one of `directories` or somewhere below one of them.

	>>> _is_under(Path("a/b/c.txt"), [Path("x"), Path("a/b")])
	True
	>>> _is_under(Path("a/bc/d.txt"), [Path("a/b")])
	False
	'''
	return any(path.is_relative_to(d) for d in directories)

def _copy(src:Path, dst:Path) -> None:
	'''Overwrite `dst` with the content and permission bits of `src`.'''

	try:
		shutil.copyfile(src, dst)
	except PermissionError:
		# Remove read-only flag and try again
		st = os.stat(dst)
		if not stat.S_ISREG(st.st_mode) or os.access(dst, os.W_OK):
			raise
		dst.chmod(stat.S_IMODE(st.st_mode) | stat.S_IWRITE)
		shutil.copyfile(src, dst)
	shutil.copymode(src, dst)

def _copy_modified_time(src:Path, dst:Path) -> None:
	st = os.stat(src)
	os.utime(dst, ns=(st.st_atime_ns, st.st_mtime_ns))

def _error_summary(e:BaseException) -> str:
	'''
	Get a one-line summary of an Error.

	>>> _error_summary(FileNotFoundError(2, "No such file or directory", "a.txt"))
	'FileNotFoundError: No such file or directory (a.txt)'
	>>> _error_summary(ValueError("bad path"))
	'ValueError: bad path'
	'''

	error_type = type(e).__name__
	if isinstance(e, OSError) and e.strerror:
		msg = f"{error_type}: {e.strerror}"
		if e.filename is not None:
			msg += f" ({e.filename})"
	else:
		msg = f"{error_type}: {e}"
	return msg

def main() -> None:
	try:
		results = run_cmd(sys.argv[1:])
	except Exception:
		print()
		traceback.print_exc()
		sys.exit(1)
	if not results.success:
		sys.exit(1)

if __name__ == "__main__":
	main()
