#!/usr/bin/env python3
# --
# File: dtctl.py
#
# `dtctl` drives services supervised by daemontools-style tooling. It
# scaffolds the service directory from a `dt.json` definition, sends control
# flags through `svc`, waits on `svstat`, and keeps a registry of known apps
# so that lifecycle actions can be issued by name or across every app.
#
# ## Usage
#
# >   dtctl [OPTIONS] COMMAND [ARGS]
# >   dtctl [OPTIONS] APP_NAME [ACTION]
#
# ## Scaffold Layout
#
# >   ${CWD}/dt.json          - App definition
# >   ${CWD}/dt/run           - Runs the application (0755)
# >   ${CWD}/dt/log/run       - Runs the logger (0755)
# >   ${CWD}/dt/env/${KEY}    - One file per environment variable
# >   ${SERVICE}/${APP_NAME}  - Symlink to ${CWD}/dt, watched by svscan

import argparse
import asyncio
import contextlib
import dataclasses
import enum
import json
import os
import re
import shlex
import shutil
import sys
import tempfile
import tomllib
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, NoReturn, Optional

# -----------------------------------------------------------------------------
#
# CONFIGURATION
#
# -----------------------------------------------------------------------------

VERSION = "1.0.0"
DTCTL_NO_COLOR = os.environ.get("DTCTL_NO_COLOR", "") == "1"

_SCRIPT_DIR = Path(__file__).parent.resolve()

DEFAULT_SVC_BIN = "/usr/bin/svc"
DEFAULT_SERVICE_DIR = "/service"
DEFAULT_DB = _SCRIPT_DIR / "dtctl.json"
DEFAULT_CONFIG = "~/.config/dtctl.toml"
DEFAULT_WAIT_TIMEOUT = 120
DEFAULT_USER = "nobody"

DEF_FILE = "dt.json"
APP_FOLDER = "dt"
STATUS_BIN = "svstat"
POLL_INTERVAL = 1.0
OUTCOME_ERROR_PREFIX = "error: "

ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
ENV_LINE_RE = re.compile(r"^([^=]+)=(.*)$")
DOWN_RE = re.compile(r"\bdown\b", re.IGNORECASE)

# Global runtime state (output settings only)
_verbose = False
_quiet = False
_no_color = DTCTL_NO_COLOR

# -----------------------------------------------------------------------------
#
# TYPES
#
# -----------------------------------------------------------------------------


class DtctlError(Exception):
	"""Base class for every failure dtctl reports to the operator."""

	pass


class ConfigError(DtctlError):
	"""Raised when a definition, registry or config file is missing or invalid."""

	pass


class AlreadyInstalledError(DtctlError):
	"""Raised when a scaffold or definition exists and force was not given."""

	pass


class InstallError(DtctlError):
	"""Raised when a scaffolding step fails. `step` names the step."""

	def __init__(self, step: str, cause: Exception):
		super().__init__(f"{step}: {cause}")
		self.step = step
		self.cause = cause


class UnknownActionError(DtctlError):
	"""Raised for an action or control word outside the known vocabulary."""

	pass


class SupervisorUnavailableError(DtctlError):
	"""Raised when `svc` or `svstat` cannot be run or exits with an error."""

	pass


class WaitTimeoutError(DtctlError):
	"""Raised when a service does not report down within the wait timeout."""

	pass


class MacroActionNotAllowedError(DtctlError):
	"""Raised when `all` is given an action that needs a single target."""

	pass


class NotFoundError(DtctlError):
	"""Raised when a registry file, registry entry or service link is missing."""

	pass


class RunState(enum.Enum):
	"""Run state derived from `svstat` output."""

	UP = "up"
	DOWN = "down"
	UNKNOWN = "unknown"


class SvcSignal(enum.Enum):
	"""Control words understood by `svc`, valued by their flag."""

	UP = "-u"
	DOWN = "-d"
	ONCE = "-o"
	PAUSE = "-p"
	CONTINUE = "-c"
	HANGUP = "-h"
	ALARM = "-a"
	INTERRUPT = "-i"
	TERMINATE = "-t"
	KILL = "-k"
	EXIT = "-x"

	@classmethod
	def parse(cls, name: str) -> "SvcSignal":
		"""Return the signal called NAME or raise `UnknownActionError`."""
		try:
			return cls[name.upper()]
		except KeyError:
			raise UnknownActionError(f"Unknown supervisor action: {name}") from None


@dataclasses.dataclass
class LogDefinition:
	"""User and command line of the companion log process."""

	user: str
	command: str


@dataclasses.dataclass
class AppDefinition:
	"""Declarative description of one managed service (`dt.json`)."""

	name: str
	cwd: str
	user: str
	command: str
	env: dict[str, str] = dataclasses.field(default_factory=dict)
	log: LogDefinition = dataclasses.field(
		default_factory=lambda: LogDefinition(user="", command="")
	)

	@classmethod
	def from_dict(cls, data: Any, source: str = DEF_FILE) -> "AppDefinition":
		"""Build a definition from parsed JSON, raising `ConfigError` when invalid."""
		if not isinstance(data, dict):
			raise ConfigError(f"{source}: app definition must be an object")
		for key in ("name", "cwd", "user", "command"):
			if not isinstance(data.get(key), str) or not data[key]:
				raise ConfigError(f"{source}: missing or invalid '{key}'")
		env = data.get("env") or {}
		log = data.get("log") or {}
		if not isinstance(env, dict):
			raise ConfigError(f"{source}: 'env' must be an object")
		if not isinstance(log, dict):
			raise ConfigError(f"{source}: 'log' must be an object")
		app = cls(
			name=data["name"],
			cwd=data["cwd"],
			user=data["user"],
			command=data["command"],
			env=dict(env),
			log=LogDefinition(
				user=log.get("user") or data["user"], command=log.get("command", "")
			),
		)
		app.validate(source)
		return app

	def validate(self, source: str = DEF_FILE) -> None:
		if "/" in self.name or self.name in ("", ".", ".."):
			raise ConfigError(f"{source}: invalid app name '{self.name}'")
		for key, value in self.env.items():
			if not ENV_KEY_RE.match(key):
				raise ConfigError(f"{source}: invalid environment variable name '{key}'")
			if not isinstance(value, str):
				raise ConfigError(f"{source}: value of '{key}' must be a string")
		if not isinstance(self.log.user, str) or not self.log.user:
			raise ConfigError(f"{source}: missing or invalid 'log.user'")
		if not isinstance(self.log.command, str) or not self.log.command:
			raise ConfigError(f"{source}: missing or invalid 'log.command'")

	def to_dict(self) -> dict[str, Any]:
		return dataclasses.asdict(self)


@dataclasses.dataclass(frozen=True)
class Context:
	"""Resolved execution context, built once per invocation."""

	cwd: Path
	def_file: Path
	app_folder: Path
	svc_bin: Path
	svc_folder: Path
	app: Optional[AppDefinition] = None
	app_link: Optional[Path] = None  # None until a definition is loaded

	@property
	def status_bin(self) -> Path:
		return self.svc_bin.parent / STATUS_BIN


@dataclasses.dataclass
class Registry:
	"""Persisted document of known apps, keyed by app name."""

	apps: dict[str, AppDefinition] = dataclasses.field(default_factory=dict)
	# Entries that failed to load: name -> (entry as read, error message)
	invalid: dict[str, tuple[Any, str]] = dataclasses.field(default_factory=dict)
	created_at: str = ""
	updated_at: str = ""


@dataclasses.dataclass
class Config:
	"""Tool settings after defaults, config file, environment and CLI."""

	bin: str = DEFAULT_SVC_BIN
	service: str = DEFAULT_SERVICE_DIR
	cwd: str = ""
	db: str = str(DEFAULT_DB)
	timeout: int = DEFAULT_WAIT_TIMEOUT
	log_level: str = "info"
	source: str = ""  # config file that was applied, if any


# -----------------------------------------------------------------------------
#
# UTILITIES
#
# -----------------------------------------------------------------------------

# =============================================================================
# Logging
# =============================================================================


# Function: dtctl_util_log LEVEL MESSAGE
# Log message respecting verbose/quiet settings.
def dtctl_util_log(level: str, msg: str) -> None:
	"""Log message respecting verbose/quiet settings."""
	levels = {"debug": 0, "info": 1, "warn": 2, "error": 3}
	level_num = levels.get(level, 1)
	if _quiet and level_num < 2:
		return
	if level == "debug" and not _verbose:
		return
	prefix = {"debug": "DBG", "info": "---", "warn": "WRN", "error": "ERR"}.get(
		level, "---"
	)
	color = {"debug": "dim", "info": "", "warn": "yellow", "error": "red"}.get(
		level, ""
	)
	line = f"{prefix} {msg}"
	if color:
		line = dtctl_util_color(line, color)
	print(line, file=sys.stderr if level == "error" else sys.stdout)


# Function: dtctl_util_color TEXT COLOR
# Colorize text if colors enabled.
def dtctl_util_color(text: str, color: str) -> str:
	if _no_color or not sys.stdout.isatty():
		return text
	codes = {
		"red": "\033[31m",
		"green": "\033[32m",
		"yellow": "\033[33m",
		"dim": "\033[2m",
		"bold": "\033[1m",
		"reset": "\033[0m",
	}
	return f"{codes.get(color, '')}{text}{codes['reset']}"


# =============================================================================
# Tables
# =============================================================================


# Function: dtctl_util_table HEAD ROWS
# Render rows as left-aligned columns, header first.
def dtctl_util_table(head: list[str], rows: Iterable[tuple[str, ...]]) -> list[str]:
	"""Return the lines of a plain-text table. An empty ROWS yields the header only."""
	rows = list(rows)
	widths = [len(h) for h in head]
	for row in rows:
		widths = [max(w, len(cell)) for w, cell in zip(widths, row)]

	def line(cells: Iterable[str]) -> str:
		return "  ".join(c.ljust(w) for c, w in zip(cells, widths)).rstrip()

	return [line(h.upper() for h in head)] + [line(row) for row in rows]


def dtctl_util_print_table(head: list[str], rows: Iterable[tuple[str, ...]]) -> None:
	rows = list(rows)
	lines = dtctl_util_table(head, rows)
	print(dtctl_util_color(lines[0], "dim"))
	for row, line in zip(rows, lines[1:]):
		if row[-1].startswith(OUTCOME_ERROR_PREFIX):
			line = dtctl_util_color(line, "red")
		print(line)


# =============================================================================
# Subprocess
# =============================================================================


# Function: dtctl_util_exec CMD
# Run command to completion, return combined stdout and stderr.
async def dtctl_util_exec(cmd: list[str]) -> str:
	"""Run CMD and return its combined output.

	Raises `SupervisorUnavailableError` when the process cannot be launched or
	exits with a non-zero status. The output is part of the error message.
	"""
	dtctl_util_log("debug", f"Executing: {' '.join(cmd)}")
	try:
		proc = await asyncio.create_subprocess_exec(
			*cmd,
			stdin=asyncio.subprocess.DEVNULL,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.STDOUT,
		)
	except OSError as e:
		raise SupervisorUnavailableError(
			f"Cannot run {cmd[0]}: {e.strerror or e}"
		) from e
	out, _ = await proc.communicate()
	output = out.decode(errors="replace")
	if proc.returncode != 0:
		detail = " ".join(output.split()) or "no output"
		raise SupervisorUnavailableError(
			f"{Path(cmd[0]).name} exited with status {proc.returncode}: {detail}"
		)
	return output


# =============================================================================
# Filesystem
# =============================================================================


async def dtctl_fs_mkdir(path: Path) -> None:
	dtctl_util_log("debug", f"Creating directory {path}")
	path.mkdir()


async def dtctl_fs_write(path: Path, content: str) -> None:
	dtctl_util_log("debug", f"Writing {path}")
	path.write_text(content)


async def dtctl_fs_chmod(path: Path, mode: int) -> None:
	path.chmod(mode)


async def dtctl_fs_symlink(target: Path, link: Path) -> None:
	dtctl_util_log("debug", f"Linking {link} -> {target}")
	link.symlink_to(target, target_is_directory=True)


# Function: dtctl_fs_remove PATH
# Remove a link or file, or a directory recursively.
async def dtctl_fs_remove(path: Path) -> None:
	dtctl_util_log("debug", f"Removing {path}")
	if path.is_symlink() or not path.is_dir():
		path.unlink()
	else:
		shutil.rmtree(path)


# Function: dtctl_fs_unlink PATH
# Remove a symbolic link, never what it points to.
async def dtctl_fs_unlink(path: Path) -> None:
	dtctl_util_log("debug", f"Unlinking {path}")
	path.unlink()


# -----------------------------------------------------------------------------
#
# CONFIG
#
# -----------------------------------------------------------------------------


# Function: dtctl_config_load PATH
# Load and merge config: defaults + config file + env vars.
def dtctl_config_load(path: Optional[str] = None) -> Config:
	"""Load tool configuration.

	An explicitly named file (argument or `DTCTL_CONFIG`) must exist; the
	default `~/.config/dtctl.toml` is optional.
	"""
	config = Config()
	explicit = path or os.environ.get("DTCTL_CONFIG", "")
	conf_path = Path(explicit or DEFAULT_CONFIG).expanduser()
	if conf_path.is_file():
		try:
			with open(conf_path, "rb") as f:
				data = tomllib.load(f)
		except (OSError, tomllib.TOMLDecodeError) as e:
			raise ConfigError(f"Failed to load {conf_path}: {e}") from e
		config = dtctl_config_from_dict(data, config, source=str(conf_path))
		config.source = str(conf_path)
	elif explicit:
		raise ConfigError(f"Config file not found: {conf_path}")
	return dtctl_config_from_env(config)


# Function: dtctl_config_from_dict DATA CONFIG
# Apply TOML data to config object.
def dtctl_config_from_dict(data: dict, config: Config, source: str = "config") -> Config:
	for key in ("bin", "service", "db", "log_level"):
		if key in data:
			if not isinstance(data[key], str):
				raise ConfigError(f"{source}: '{key}' must be a string")
			setattr(config, key, data[key])
	if "timeout" in data:
		if not isinstance(data["timeout"], int) or data["timeout"] < 0:
			raise ConfigError(f"{source}: 'timeout' must be a non-negative integer")
		config.timeout = data["timeout"]
	return config


# Function: dtctl_config_from_env CONFIG
# Load config overrides from DTCTL_{KEY} env vars.
def dtctl_config_from_env(config: Config) -> Config:
	"""Apply environment variable overrides to config."""
	for key in ("bin", "service", "db", "log_level"):
		value = os.environ.get(f"DTCTL_{key.upper()}")
		if value:
			setattr(config, key, value)
	timeout = os.environ.get("DTCTL_TIMEOUT")
	if timeout:
		config.timeout = dtctl_config_parse_timeout(timeout)
	return config


def dtctl_config_parse_timeout(value: str) -> int:
	try:
		timeout = int(value)
	except ValueError:
		raise ConfigError(f"Invalid timeout: {value}") from None
	if timeout < 0:
		raise ConfigError(f"Invalid timeout: {value}")
	return timeout


# Function: dtctl_config_apply_CLI_overrides ARGS CONFIG
# Apply CLI argument overrides to config.
def dtctl_config_apply_CLI_overrides(args: argparse.Namespace, config: Config) -> Config:
	for key in ("bin", "service", "cwd", "db"):
		value = getattr(args, key, None)
		if value:
			setattr(config, key, value)
	if getattr(args, "timeout", None) is not None:
		config.timeout = dtctl_config_parse_timeout(str(args.timeout))
	return config


# -----------------------------------------------------------------------------
#
# ENVIRONMENT
#
# -----------------------------------------------------------------------------


# Function: dtctl_env_cwd CONFIG
# Absolute working directory from config, defaulting to the process cwd.
def dtctl_env_cwd(config: Config) -> Path:
	return Path(os.path.abspath(config.cwd or os.getcwd()))


# Function: dtctl_env_resolve CONFIG [APP]
# Build the execution context for one invocation.
def dtctl_env_resolve(config: Config, app: Optional[AppDefinition] = None) -> Context:
	"""Resolve the environment for running commands.

	When APP is given (typically a registry entry) it is used verbatim.
	Otherwise `dt.json` is loaded from the working directory if present, and
	the context carries no definition when it is absent.
	"""
	cwd = dtctl_env_cwd(config)
	def_file = cwd / DEF_FILE
	if app is None and def_file.exists():
		app = dtctl_definition_load(def_file)
	svc_folder = Path(os.path.abspath(config.service))
	ctx = Context(
		cwd=cwd,
		def_file=def_file,
		app_folder=cwd / APP_FOLDER,
		svc_bin=Path(os.path.abspath(config.bin)),
		svc_folder=svc_folder,
		app=app,
		app_link=Path(os.path.abspath(svc_folder / app.name)) if app else None,
	)
	dtctl_util_log("debug", f"Environment: {ctx}")
	return ctx


# Function: dtctl_env_require_app CTX
# Return (app, link) or fail when no definition was loaded.
def dtctl_env_require_app(ctx: Context) -> tuple[AppDefinition, Path]:
	if ctx.app is None or ctx.app_link is None:
		raise ConfigError(
			f"No app definition found at {ctx.def_file} (run 'dtctl generate' first)"
		)
	return ctx.app, ctx.app_link


def dtctl_definition_load(path: Path) -> AppDefinition:
	try:
		data = json.loads(path.read_text())
	except json.JSONDecodeError as e:
		raise ConfigError(f"Invalid JSON in {path}: {e}") from e
	except OSError as e:
		raise ConfigError(f"Cannot read {path}: {e}") from e
	return AppDefinition.from_dict(data, source=str(path))


# -----------------------------------------------------------------------------
#
# REGISTRY
#
# -----------------------------------------------------------------------------


def _dtctl_registry_now(previous: str = "") -> str:
	"""Current UTC time in ISO format, always later than PREVIOUS."""
	now = datetime.now(timezone.utc)
	try:
		last = datetime.fromisoformat(previous) if previous else None
	except ValueError:
		last = None
	if last is not None and last.tzinfo is not None and now <= last:
		now = last + timedelta(microseconds=1)
	return now.isoformat()


# Function: _dtctl_registry_write PATH DATA
# Write JSON through a temporary file renamed over PATH.
def _dtctl_registry_write(path: Path, data: dict) -> None:
	path.parent.mkdir(parents=True, exist_ok=True)
	fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
	try:
		with os.fdopen(fd, "w") as f:
			f.write(json.dumps(data, indent=2) + "\n")
		os.replace(tmp, path)
	except BaseException:
		with contextlib.suppress(OSError):
			os.unlink(tmp)
		raise


def dtctl_registry_to_dict(registry: Registry) -> dict[str, Any]:
	apps = {name: app.to_dict() for name, app in registry.apps.items()}
	for name, (entry, _) in registry.invalid.items():
		apps.setdefault(name, entry)
	return {
		"apps": apps,
		"createdAt": registry.created_at,
		"updatedAt": registry.updated_at,
	}


# Function: dtctl_registry_get PATH
# Read the registry, creating an empty one first if absent.
def dtctl_registry_get(path: Path) -> Registry:
	"""Read the registry at PATH.

	A missing file is created with an empty `apps` mapping before reading,
	so the first call on a host needs no special handling. Entries that do
	not load are kept in `invalid` and written back unchanged on save.
	"""
	if not path.exists():
		dtctl_util_log("debug", f"Registry {path} does not exist, creating it")
		now = _dtctl_registry_now()
		_dtctl_registry_write(path, {"apps": {}, "createdAt": now, "updatedAt": now})
	try:
		data = json.loads(path.read_text())
	except json.JSONDecodeError as e:
		raise ConfigError(f"Invalid JSON in registry {path}: {e}") from e
	if not isinstance(data, dict) or not isinstance(data.get("apps", {}), dict):
		raise ConfigError(f"Registry {path} is not a valid registry document")

	apps, invalid = {}, {}
	for name, value in data.get("apps", {}).items():
		try:
			app = AppDefinition.from_dict(value, source=f"{path} ({name})")
			if app.name != name:
				raise ConfigError(
					f"Registry {path}: entry '{name}' holds app named '{app.name}'"
				)
		except ConfigError as e:
			dtctl_util_log("debug", f"Invalid registry entry {name}: {e}")
			invalid[name] = (value, str(e))
			continue
		apps[name] = app
	dtctl_util_log(
		"debug", f"Registry read: {len(apps)} app(s), {len(invalid)} invalid"
	)
	return Registry(
		apps=apps,
		invalid=invalid,
		created_at=data.get("createdAt", ""),
		updated_at=data.get("updatedAt", ""),
	)


# Function: dtctl_registry_save REGISTRY PATH
# Stamp updatedAt and overwrite the registry file. Last writer wins.
def dtctl_registry_save(registry: Registry, path: Path) -> None:
	registry.updated_at = _dtctl_registry_now(registry.updated_at)
	if not registry.created_at:
		registry.created_at = registry.updated_at
	dtctl_util_log("debug", f"Saving registry {path}")
	_dtctl_registry_write(path, dtctl_registry_to_dict(registry))


def dtctl_registry_destroy(path: Path) -> None:
	try:
		path.unlink()
	except FileNotFoundError:
		raise NotFoundError(f"Registry {path} does not exist") from None


def dtctl_registry_add(registry: Registry, app: AppDefinition) -> None:
	registry.invalid.pop(app.name, None)
	registry.apps[app.name] = app


def dtctl_registry_remove(registry: Registry, name: str) -> None:
	if registry.invalid.pop(name, None) is not None:
		return
	try:
		del registry.apps[name]
	except KeyError:
		raise NotFoundError(f"App not registered: {name}") from None


# -----------------------------------------------------------------------------
#
# SCAFFOLD
#
# -----------------------------------------------------------------------------


def dtctl_scaffold_log_script(app: AppDefinition) -> str:
	return f"#!/bin/sh\nexec setuidgid {shlex.quote(app.log.user)} {app.log.command}\n"


def dtctl_scaffold_run_script(app: AppDefinition) -> str:
	"""Main run script: drops to the app user with env/ loaded by envdir."""
	return (
		"#!/bin/sh\n"
		"BASE=$(pwd)\n"
		f"cd {shlex.quote(app.cwd)}\n"
		"exec 2>&1\n"
		f'exec setuidgid {shlex.quote(app.user)} envdir "${{BASE}}/env" {app.command}\n'
	)


def _dtctl_scaffold_check_link(link: Path) -> None:
	"""Refuse to touch a supervision path that is not a symbolic link."""
	if os.path.lexists(link) and not link.is_symlink():
		raise ConfigError(f"{link} is not a symbolic link, refusing to remove it")


async def _dtctl_scaffold_step(step: str, *aws: Awaitable[None]) -> None:
	"""Await AWS jointly, reporting an OS failure as `InstallError` for STEP."""
	try:
		await asyncio.gather(*aws)
	except OSError as e:
		raise InstallError(step, e) from e


# Function: dtctl_scaffold_install CTX FORCE
# Create the scaffold directory and link it into the service directory.
async def dtctl_scaffold_install(ctx: Context, force: bool = False) -> None:
	"""Install the scaffold described by the context's app definition.

	Steps run in order and stop at the first failure. Nothing already done is
	rolled back; re-run with FORCE to replace a partial scaffold. The supervisor
	starts the service once the link appears.
	"""
	app, link = dtctl_env_require_app(ctx)
	folder = ctx.app_folder
	existing = [p for p in (folder, link) if os.path.lexists(p)]
	if existing and not force:
		raise AlreadyInstalledError(
			f"{', '.join(str(p) for p in existing)} already exists and force was not given"
		)

	if existing:
		_dtctl_scaffold_check_link(link)
		await _dtctl_scaffold_step(
			"remove existing scaffold",
			*(dtctl_fs_unlink(p) if p == link else dtctl_fs_remove(p) for p in existing),
		)
	await _dtctl_scaffold_step("create scaffold directory", dtctl_fs_mkdir(folder))
	await _dtctl_scaffold_step(
		"create log and env directories",
		dtctl_fs_mkdir(folder / "log"),
		dtctl_fs_mkdir(folder / "env"),
	)
	await _dtctl_scaffold_step(
		"write env files",
		*(dtctl_fs_write(folder / "env" / k, f"{v}\n") for k, v in app.env.items()),
	)
	await _dtctl_scaffold_step(
		"write log run script",
		dtctl_fs_write(folder / "log" / "run", dtctl_scaffold_log_script(app)),
	)
	await _dtctl_scaffold_step(
		"write run script", dtctl_fs_write(folder / "run", dtctl_scaffold_run_script(app))
	)
	await _dtctl_scaffold_step(
		"mark run scripts executable",
		dtctl_fs_chmod(folder / "run", 0o755),
		dtctl_fs_chmod(folder / "log" / "run", 0o755),
	)
	await _dtctl_scaffold_step(
		"link into service directory", dtctl_fs_symlink(folder, link)
	)


# Function: dtctl_scaffold_parse_env LINES STRICT
# Parse KEY=VALUE lines into a mapping.
def dtctl_scaffold_parse_env(lines: Iterable[str], strict: bool = False) -> dict[str, str]:
	"""Parse `KEY=VALUE` lines, as printed by `env`.

	Unparseable lines are skipped, or raise `ConfigError` when STRICT.
	"""
	env = {}
	for line in lines:
		line = line.rstrip("\n")
		match = ENV_LINE_RE.match(line)
		if not match or not ENV_KEY_RE.match(match.group(1)):
			if strict:
				raise ConfigError(f"Invalid environment assignment: {line}")
			dtctl_util_log("debug", f"Skipping env line: {line!r}")
			continue
		env[match.group(1)] = match.group(2)
	return env


def dtctl_scaffold_definition(
	cwd: Path,
	command: str,
	name: Optional[str] = None,
	user: Optional[str] = None,
	env: Optional[dict[str, str]] = None,
	log_user: Optional[str] = None,
	log_command: Optional[str] = None,
) -> AppDefinition:
	"""Build a definition for CWD, filling in defaults for what is not given."""
	user = user or DEFAULT_USER
	app = AppDefinition(
		name=name or cwd.name,
		cwd=str(cwd),
		user=user,
		command=command,
		env=dict(env or {}),
		log=LogDefinition(
			user=log_user or user,
			command=log_command or f"multilog s16777215 t {cwd / 'log'}",
		),
	)
	app.validate()
	return app


# Function: dtctl_scaffold_generate CWD APP FORCE
# Write dt.json into CWD.
def dtctl_scaffold_generate(cwd: Path, app: AppDefinition, force: bool = False) -> Path:
	def_file = cwd / DEF_FILE
	if def_file.exists() and not force:
		raise AlreadyInstalledError(f"{def_file} already exists and force was not given")
	dtctl_util_log("debug", f"Writing {def_file}")
	def_file.write_text(json.dumps(app.to_dict(), indent=2) + "\n")
	return def_file


# Function: dtctl_scaffold_remove CTX TIMEOUT
# Stop the service and unlink it from the service directory.
async def dtctl_scaffold_remove(ctx: Context, timeout: int = DEFAULT_WAIT_TIMEOUT) -> None:
	_, link = dtctl_env_require_app(ctx)
	if not os.path.lexists(link):
		raise NotFoundError(f"{link} does not exist")
	_dtctl_scaffold_check_link(link)
	dtctl_util_log("debug", "Stopping service before removal")
	await dtctl_action_run(ctx, "stop", timeout)
	await dtctl_fs_unlink(link)


# -----------------------------------------------------------------------------
#
# SUPERVISOR
#
# -----------------------------------------------------------------------------


# Function: dtctl_svc_signal CTX ACTION
# Send a control flag to svc for the app link.
async def dtctl_svc_signal(ctx: Context, action: "SvcSignal | str") -> None:
	"""Send ACTION to the supervisor.

	Names outside `SvcSignal` raise `UnknownActionError` before any process
	is started.
	"""
	sig = action if isinstance(action, SvcSignal) else SvcSignal.parse(action)
	_, link = dtctl_env_require_app(ctx)
	await dtctl_util_exec([str(ctx.svc_bin), sig.value, str(link)])


# Function: dtctl_svc_probe CTX
# Return svstat output on a single trimmed line.
async def dtctl_svc_probe(ctx: Context) -> str:
	_, link = dtctl_env_require_app(ctx)
	output = await dtctl_util_exec([str(ctx.status_bin), str(link)])
	return output.replace("\n", " ").strip()


def dtctl_svc_state(text: str) -> RunState:
	if not text.strip():
		return RunState.UNKNOWN
	return RunState.DOWN if DOWN_RE.search(text) else RunState.UP


async def dtctl_svc_status(ctx: Context) -> RunState:
	return dtctl_svc_state(await dtctl_svc_probe(ctx))


# Function: dtctl_svc_wait_down CTX TIMEOUT
# Poll status once a second until down or TIMEOUT checks have passed.
async def dtctl_svc_wait_down(ctx: Context, timeout: int = DEFAULT_WAIT_TIMEOUT) -> None:
	"""Wait until the service reports down.

	Gives up with `WaitTimeoutError` after TIMEOUT + 1 checks; a timeout of 0
	fails on the first check that is not down. Probe errors propagate.
	"""
	attempts = 0
	while True:
		if await dtctl_svc_status(ctx) is RunState.DOWN:
			return
		attempts += 1
		if attempts > timeout:
			name = ctx.app.name if ctx.app else ctx.cwd
			raise WaitTimeoutError(f"Service {name} did not stop within {timeout}s")
		await asyncio.sleep(POLL_INTERVAL)


# -----------------------------------------------------------------------------
#
# ACTIONS
#
# -----------------------------------------------------------------------------

Action = Callable[[Context, int], Awaitable[str]]


async def dtctl_action_start(ctx: Context, timeout: int) -> str:
	await dtctl_svc_signal(ctx, SvcSignal.UP)
	return ""


async def dtctl_action_stop(ctx: Context, timeout: int) -> str:
	await dtctl_svc_signal(ctx, SvcSignal.DOWN)
	await dtctl_svc_wait_down(ctx, timeout)
	return ""


async def dtctl_action_restart(ctx: Context, timeout: int) -> str:
	await dtctl_svc_signal(ctx, SvcSignal.DOWN)
	await dtctl_svc_wait_down(ctx, timeout)
	await dtctl_svc_signal(ctx, SvcSignal.UP)
	return ""


async def dtctl_action_status(ctx: Context, timeout: int) -> str:
	return await dtctl_svc_probe(ctx)


def _dtctl_action_signal(sig: SvcSignal) -> Action:
	async def action(ctx: Context, timeout: int) -> str:
		await dtctl_svc_signal(ctx, sig)
		return ""

	return action


# Lifecycle actions by CLI name. Raw up/down are reached through start/stop.
DTCTL_ACTIONS: dict[str, Action] = {
	"start": dtctl_action_start,
	"stop": dtctl_action_stop,
	"restart": dtctl_action_restart,
	"status": dtctl_action_status,
	**{
		sig.name.lower(): _dtctl_action_signal(sig)
		for sig in SvcSignal
		if sig not in (SvcSignal.UP, SvcSignal.DOWN)
	},
}

# Actions `all` may run on every registry entry.
DTCTL_MACRO_ACTIONS = frozenset(DTCTL_ACTIONS)


# Function: dtctl_action_run CTX ACTION TIMEOUT
# Run one lifecycle action, return its textual outcome.
async def dtctl_action_run(
	ctx: Context, action: str, timeout: int = DEFAULT_WAIT_TIMEOUT
) -> str:
	handler = DTCTL_ACTIONS.get(action)
	if handler is None:
		raise UnknownActionError(f"Unknown action: {action}")
	dtctl_util_log("debug", f"Running {action} on {ctx.app.name if ctx.app else ctx.cwd}")
	return await handler(ctx, timeout)


async def _dtctl_action_run_named(
	name: str, ctx: Context, action: str, timeout: int
) -> tuple[str, str]:
	try:
		result = await dtctl_action_run(ctx, action, timeout)
	except DtctlError as e:
		return name, f"{OUTCOME_ERROR_PREFIX}{e}"
	return name, result.strip() or "Success"


async def _dtctl_action_probe_named(name: str, ctx: Context) -> tuple[str, str]:
	try:
		text = await dtctl_svc_probe(ctx)
	except DtctlError as e:
		return name, f"{OUTCOME_ERROR_PREFIX}{e}"
	return name, text or RunState.UNKNOWN.value


def _dtctl_action_invalid_rows(registry: Registry) -> list[tuple[str, str]]:
	return [
		(name, f"{OUTCOME_ERROR_PREFIX}{error}")
		for name, (_, error) in registry.invalid.items()
	]


# Function: dtctl_action_run_all ACTION REGISTRY CONFIG
# Run ACTION on every registered app concurrently.
async def dtctl_action_run_all(
	action: str, registry: Registry, config: Config
) -> list[tuple[str, str]]:
	"""Run ACTION on every registry entry and return `(name, outcome)` pairs.

	Entries run concurrently; a failing entry reports its error as its
	outcome without affecting the others. Results keep registry order, with
	entries that failed to load reported last.
	"""
	if action not in DTCTL_MACRO_ACTIONS:
		raise MacroActionNotAllowedError(f"Macro action not allowed: {action}")
	return list(
		await asyncio.gather(
			*(
				_dtctl_action_run_named(
					name, dtctl_env_resolve(config, app), action, config.timeout
				)
				for name, app in registry.apps.items()
			)
		)
	) + _dtctl_action_invalid_rows(registry)


# Function: dtctl_action_status_all REGISTRY CONFIG
# Probe every registered app concurrently.
async def dtctl_action_status_all(
	registry: Registry, config: Config
) -> list[tuple[str, str]]:
	return list(
		await asyncio.gather(
			*(
				_dtctl_action_probe_named(name, dtctl_env_resolve(config, app))
				for name, app in registry.apps.items()
			)
		)
	) + _dtctl_action_invalid_rows(registry)


# -----------------------------------------------------------------------------
#
# COMMANDS
#
# -----------------------------------------------------------------------------


async def _dtctl_cmd_run_action(ctx: Context, action: str, timeout: int) -> int:
	result = await dtctl_action_run(ctx, action, timeout)
	if result:
		print(result)
	if action != "status":
		dtctl_util_log("info", f"Service {action} executed successfully")
	return 0


# Function: dtctl_cmd_action ARGS CONFIG
# Run the lifecycle action named by the subcommand on the local app.
async def dtctl_cmd_action(args: argparse.Namespace, config: Config) -> int:
	ctx = dtctl_env_resolve(config)
	return await _dtctl_cmd_run_action(ctx, args.command, config.timeout)


# Function: dtctl_cmd_app ARGS CONFIG
# Run an action on a registered app by name.
async def dtctl_cmd_app(args: argparse.Namespace, config: Config) -> int:
	registry = dtctl_registry_get(Path(config.db))
	app = registry.apps.get(args.app_name)
	if args.app_name in registry.invalid:
		raise ConfigError(registry.invalid[args.app_name][1])
	if app is None:
		dtctl_util_log("warn", f"App not registered: {args.app_name}")
		dtctl_util_print_table(
			["Name", "Status"], await dtctl_action_status_all(registry, config)
		)
		return 1
	ctx = dtctl_env_resolve(config, app)
	return await _dtctl_cmd_run_action(ctx, args.action, config.timeout)


async def dtctl_cmd_install(args: argparse.Namespace, config: Config) -> int:
	ctx = dtctl_env_resolve(config)
	await dtctl_scaffold_install(ctx, force=args.force)
	dtctl_util_log(
		"info", "Installation complete, the supervisor will start the service shortly"
	)
	return 0


async def dtctl_cmd_remove(args: argparse.Namespace, config: Config) -> int:
	ctx = dtctl_env_resolve(config)
	await dtctl_scaffold_remove(ctx, config.timeout)
	dtctl_util_log(
		"info", f"Removal complete, {ctx.app_folder} can be removed manually"
	)
	return 0


# Function: dtctl_cmd_generate ARGS CONFIG
# Write dt.json from options and, optionally, env lines on stdin.
async def dtctl_cmd_generate(args: argparse.Namespace, config: Config) -> int:
	cwd = dtctl_env_cwd(config)
	env = {}
	if args.stdin:
		env.update(dtctl_scaffold_parse_env(sys.stdin))
	env.update(dtctl_scaffold_parse_env(args.env or [], strict=True))
	app = dtctl_scaffold_definition(
		cwd,
		command=args.app_command,
		name=args.app_name,
		user=args.user,
		env=env,
		log_user=args.log_user,
		log_command=args.log_command,
	)
	def_file = dtctl_scaffold_generate(cwd, app, force=args.force)
	dtctl_util_log("info", f"{DEF_FILE} successfully written to {def_file}")
	return 0


async def dtctl_cmd_save(args: argparse.Namespace, config: Config) -> int:
	app, _ = dtctl_env_require_app(dtctl_env_resolve(config))
	db = Path(config.db)
	registry = dtctl_registry_get(db)
	dtctl_registry_add(registry, app)
	dtctl_registry_save(registry, db)
	dtctl_util_log("info", f"Instance {app.name} saved to registry")
	return 0


async def dtctl_cmd_unsave(args: argparse.Namespace, config: Config) -> int:
	app, _ = dtctl_env_require_app(dtctl_env_resolve(config))
	db = Path(config.db)
	registry = dtctl_registry_get(db)
	dtctl_registry_remove(registry, app.name)
	dtctl_registry_save(registry, db)
	dtctl_util_log("info", f"Instance {app.name} removed from registry")
	return 0


async def dtctl_cmd_flush(args: argparse.Namespace, config: Config) -> int:
	try:
		dtctl_registry_destroy(Path(config.db))
	except NotFoundError as e:
		dtctl_util_log("warn", f"{e}, nothing to flush")
		return 0
	dtctl_util_log("info", "Registry flushed successfully")
	return 0


# Function: dtctl_cmd_list ARGS CONFIG
# Show every registered app with its supervisor status.
async def dtctl_cmd_list(args: argparse.Namespace, config: Config) -> int:
	registry = dtctl_registry_get(Path(config.db))
	rows = await dtctl_action_status_all(registry, config)
	dtctl_util_print_table(["Name", "Status"], rows)
	return 0


# Function: dtctl_cmd_all ARGS CONFIG
# Run an action on every registered app; fails if any entry failed.
async def dtctl_cmd_all(args: argparse.Namespace, config: Config) -> int:
	registry = dtctl_registry_get(Path(config.db))
	rows = await dtctl_action_run_all(args.action, registry, config)
	dtctl_util_print_table(["Name", "Result"], rows)
	failed = [name for name, outcome in rows if outcome.startswith(OUTCOME_ERROR_PREFIX)]
	if failed:
		dtctl_util_log("error", f"{args.action} failed for: {', '.join(failed)}")
		return 1
	return 0


async def dtctl_cmd_config(args: argparse.Namespace, config: Config) -> int:
	"""Show the resolved tool configuration."""
	print("# Resolved configuration")
	print(f"config  = {config.source or '(none)'}")
	print(f"bin     = {config.bin}")
	print(f"service = {config.service}")
	print(f"cwd     = {dtctl_env_cwd(config)}")
	print(f"db      = {config.db}")
	print(f"timeout = {config.timeout}")
	return 0


# -----------------------------------------------------------------------------
#
# CLI
#
# -----------------------------------------------------------------------------

DTCTL_CLI_COMMANDS = (
	"install",
	*DTCTL_ACTIONS,
	"remove",
	"generate",
	"save",
	"unsave",
	"flush",
	"list",
	"all",
	"config",
	"app",
)

# Global options taking a value, skipped when looking for the command word.
_DTCTL_CLI_VALUE_OPTIONS = {
	"-B",
	"--bin",
	"-C",
	"--cwd",
	"-S",
	"--service",
	"--db",
	"--config",
	"-T",
	"--timeout",
}


class DtctlArgumentParser(argparse.ArgumentParser):
	"""ArgumentParser with improved error messages."""

	def error(self, message: str) -> NoReturn:
		self.print_usage(sys.stderr)
		sys.stderr.write(f"\n{self.prog}: error: {message}\n")
		sys.stderr.write(f"\nAvailable commands: {', '.join(DTCTL_CLI_COMMANDS)}\n")
		sys.stderr.write(f"Run '{self.prog} COMMAND --help' for command-specific help.\n")
		sys.exit(2)


# Function: dtctl_CLI_normalize_argv ARGV
# Rewrite the bare `APP_NAME [ACTION]` form as `app APP_NAME [ACTION]`.
def dtctl_CLI_normalize_argv(argv: list[str]) -> list[str]:
	skip = False
	for i, token in enumerate(argv):
		if skip:
			skip = False
			continue
		if token in _DTCTL_CLI_VALUE_OPTIONS:
			skip = True
			continue
		if token.startswith("-"):
			continue
		if token in DTCTL_CLI_COMMANDS:
			return argv
		return argv[:i] + ["app"] + argv[i:]
	return argv


# Function: dtctl_CLI_build_parser
# Build argument parser with all subcommands.
def dtctl_CLI_build_parser() -> argparse.ArgumentParser:
	parser = DtctlArgumentParser(
		prog="dtctl",
		description="Manage daemontools services: scaffold, control and track them.",
		epilog="An unknown command word is taken as a registered app name: "
		"'dtctl web restart' is 'dtctl app web restart'.",
	)

	# Global options
	parser.add_argument("-V", "--version", action="version", version=f"dtctl {VERSION}")
	parser.add_argument(
		"-B", "--bin", metavar="PATH", help=f"Location of svc (default: {DEFAULT_SVC_BIN})"
	)
	parser.add_argument(
		"-C", "--cwd", metavar="DIR", help="Working directory holding dt.json (default: .)"
	)
	parser.add_argument(
		"-S",
		"--service",
		metavar="DIR",
		help=f"Supervisor service directory (default: {DEFAULT_SERVICE_DIR})",
	)
	parser.add_argument("--db", metavar="FILE", help="Registry file")
	parser.add_argument("--config", metavar="FILE", help="Use specific config file")
	parser.add_argument(
		"-T",
		"--timeout",
		type=int,
		metavar="SEC",
		help=f"Wait timeout for stop/restart (default: {DEFAULT_WAIT_TIMEOUT})",
	)
	parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
	parser.add_argument(
		"-q", "--quiet", action="store_true", help="Suppress non-error output"
	)
	parser.add_argument("--no-color", action="store_true", help="Disable colored output")

	subparsers = parser.add_subparsers(dest="command", title="commands")

	p_install = subparsers.add_parser("install", help="Install dt files using dt.json")
	p_install.add_argument(
		"-f", "--force", action="store_true", help="Overwrite an existing installation"
	)

	for action in DTCTL_ACTIONS:
		subparsers.add_parser(action, help=f"{action.capitalize()} the service")

	subparsers.add_parser("remove", help="Stop the service and unlink it")

	p_generate = subparsers.add_parser("generate", help="Generate dt.json")
	p_generate.add_argument(
		"-a", "--app-name", metavar="NAME", help="App name (default: basename of cwd)"
	)
	p_generate.add_argument(
		"-c",
		"--command",
		dest="app_command",
		metavar="CMD",
		required=True,
		help="Command line that runs the app",
	)
	p_generate.add_argument(
		"-u", "--user", metavar="USER", help=f"User to run the app as (default: {DEFAULT_USER})"
	)
	p_generate.add_argument(
		"-L", "--log-user", metavar="USER", help="User the logger runs as (default: --user)"
	)
	p_generate.add_argument(
		"-l",
		"--log-command",
		metavar="CMD",
		help="Logger command line (default: multilog s16777215 t CWD/log)",
	)
	p_generate.add_argument(
		"-e", "--env", action="append", metavar="KEY=VALUE", help="Environment variable"
	)
	p_generate.add_argument(
		"-s", "--stdin", action="store_true", help="Read KEY=VALUE lines from stdin"
	)
	p_generate.add_argument(
		"-f", "--force", action="store_true", help="Overwrite an existing dt.json"
	)

	subparsers.add_parser("save", help="Save the app to the registry")
	subparsers.add_parser("unsave", help="Remove the app from the registry")
	subparsers.add_parser("flush", help="Delete the registry")
	subparsers.add_parser("list", help="List registered apps and their status")

	p_all = subparsers.add_parser("all", help="Run an action on every registered app")
	p_all.add_argument("action", metavar="ACTION", help="Lifecycle action")

	subparsers.add_parser("config", help="Show resolved configuration")

	p_app = subparsers.add_parser("app", help="Run an action on a registered app")
	p_app.add_argument("app_name", metavar="APP", help="Registered app name")
	p_app.add_argument(
		"action", nargs="?", default="status", metavar="ACTION", help="Action (default: status)"
	)

	return parser


# Function: dtctl_CLI_dispatch ARGS CONFIG
# Dispatch to the command handler and report failures.
async def dtctl_CLI_dispatch(args: argparse.Namespace, config: Config) -> int:
	commands = {
		"install": dtctl_cmd_install,
		"remove": dtctl_cmd_remove,
		"generate": dtctl_cmd_generate,
		"save": dtctl_cmd_save,
		"unsave": dtctl_cmd_unsave,
		"flush": dtctl_cmd_flush,
		"list": dtctl_cmd_list,
		"all": dtctl_cmd_all,
		"config": dtctl_cmd_config,
		"app": dtctl_cmd_app,
		**{action: dtctl_cmd_action for action in DTCTL_ACTIONS},
	}
	handler = commands.get(args.command)
	if not handler:
		dtctl_util_log("error", f"Unknown command: {args.command}")
		return 1
	try:
		return await handler(args, config)
	except (DtctlError, OSError) as e:
		what = args.action if args.command == "app" else args.command
		dtctl_util_log("error", f"Failed to {what}: {e}")
		return 1


# -----------------------------------------------------------------------------
#
# MAIN
#
# -----------------------------------------------------------------------------


# Function: dtctl_main
# Main entry point.
def dtctl_main(argv: Optional[list[str]] = None) -> int:
	"""Main entry point."""
	global _verbose, _quiet, _no_color

	argv = list(sys.argv[1:] if argv is None else argv)
	parser = dtctl_CLI_build_parser()
	args = parser.parse_args(dtctl_CLI_normalize_argv(argv))

	_quiet = args.quiet
	_no_color = args.no_color or DTCTL_NO_COLOR

	try:
		config = dtctl_config_apply_CLI_overrides(args, dtctl_config_load(args.config))
	except ConfigError as e:
		dtctl_util_log("error", str(e))
		return 1
	_verbose = args.verbose or config.log_level == "debug"

	# No command lists the registry
	if not args.command:
		args.command = "list"

	try:
		return asyncio.run(dtctl_CLI_dispatch(args, config))
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	sys.exit(dtctl_main())

# EOF
