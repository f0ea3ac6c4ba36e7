from __future__ import annotations

from pathlib import Path

import pytest

import dtctl


class FakeSupervisor:
	"""Stands in for `dtctl_util_exec`, recording every command.

	`svstat` answers are taken from STATUSES in order, the last one repeating.
	Links listed in `broken` make any command on them fail.
	"""

	def __init__(self, statuses: list[str] | None = None) -> None:
		self.calls: list[list[str]] = []
		self.statuses = list(statuses or ["/service/web: up (pid 42) 10 seconds"])
		self.broken: set[str] = set()

	async def __call__(self, cmd: list[str]) -> str:
		self.calls.append(cmd)
		if cmd[-1] in self.broken:
			raise dtctl.SupervisorUnavailableError(f"svstat exited with status 111: {cmd[-1]}")
		if Path(cmd[0]).name == dtctl.STATUS_BIN:
			if len(self.statuses) > 1:
				return self.statuses.pop(0) + "\n"
			return self.statuses[0] + "\n"
		return ""

	def flags(self) -> list[str]:
		return [cmd[1] for cmd in self.calls if Path(cmd[0]).name == "svc"]


@pytest.fixture
def supervisor(monkeypatch: pytest.MonkeyPatch) -> FakeSupervisor:
	fake = FakeSupervisor()
	monkeypatch.setattr(dtctl, "dtctl_util_exec", fake)
	return fake


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
	delays: list[float] = []

	async def fake_sleep(delay: float) -> None:
		delays.append(delay)

	monkeypatch.setattr(dtctl.asyncio, "sleep", fake_sleep)
	return delays


@pytest.fixture
def app(tmp_path: Path) -> dtctl.AppDefinition:
	return dtctl.AppDefinition(
		name="web",
		cwd=str(tmp_path / "web"),
		user="www",
		command="python -m http.server 8080",
		env={"PORT": "8080", "APP_ENV": "production"},
		log=dtctl.LogDefinition(user="log", command="multilog t ./main"),
	)


@pytest.fixture
def config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> dtctl.Config:
	"""Config rooted in tmp_path, isolated from the user's environment."""
	for key in ("DTCTL_CONFIG", "DTCTL_BIN", "DTCTL_SERVICE", "DTCTL_DB", "DTCTL_TIMEOUT", "DTCTL_LOG_LEVEL"):
		monkeypatch.delenv(key, raising=False)
	monkeypatch.setenv("HOME", str(tmp_path / "home"))
	(tmp_path / "web").mkdir()
	(tmp_path / "service").mkdir()
	return dtctl.Config(
		bin=str(tmp_path / "bin" / "svc"),
		service=str(tmp_path / "service"),
		cwd=str(tmp_path / "web"),
		db=str(tmp_path / "dtctl.json"),
		timeout=5,
	)


@pytest.fixture
def ctx(config: dtctl.Config, app: dtctl.AppDefinition) -> dtctl.Context:
	return dtctl.dtctl_env_resolve(config, app)
