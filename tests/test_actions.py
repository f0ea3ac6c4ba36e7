import asyncio

import pytest

import dtctl

DOWN = "/service/web: down 1 seconds, normally up"


def _registry(*apps: dtctl.AppDefinition) -> dtctl.Registry:
	registry = dtctl.Registry()
	for app in apps:
		dtctl.dtctl_registry_add(registry, app)
	return registry


def _named(app: dtctl.AppDefinition, name: str) -> dtctl.AppDefinition:
	return dtctl.AppDefinition.from_dict({**app.to_dict(), "name": name})


def test_restart_is_down_wait_up(ctx: dtctl.Context, supervisor, sleeps) -> None:
	supervisor.statuses = ["/service/web: up (pid 42) 9 seconds", DOWN]
	result = asyncio.run(dtctl.dtctl_action_run(ctx, "restart", timeout=5))

	assert result == ""
	assert [cmd[1] if cmd[0].endswith("svc") else "svstat" for cmd in supervisor.calls] == [
		"-d",
		"svstat",
		"svstat",
		"-u",
	]
	assert sleeps == [dtctl.POLL_INTERVAL]


def test_stop_waits_without_starting(ctx: dtctl.Context, supervisor, sleeps) -> None:
	supervisor.statuses = [DOWN]
	asyncio.run(dtctl.dtctl_action_run(ctx, "stop"))
	assert supervisor.flags() == ["-d"]
	assert len(supervisor.calls) == 2


def test_restart_timeout_does_not_start(ctx: dtctl.Context, supervisor, sleeps) -> None:
	with pytest.raises(dtctl.WaitTimeoutError):
		asyncio.run(dtctl.dtctl_action_run(ctx, "restart", timeout=0))
	assert supervisor.flags() == ["-d"]


@pytest.mark.parametrize(
	"action, flag",
	[
		("start", "-u"),
		("once", "-o"),
		("pause", "-p"),
		("continue", "-c"),
		("hangup", "-h"),
		("alarm", "-a"),
		("interrupt", "-i"),
		("terminate", "-t"),
		("kill", "-k"),
		("exit", "-x"),
	],
)
def test_simple_actions_are_one_signal(
	ctx: dtctl.Context, supervisor, action: str, flag: str
) -> None:
	asyncio.run(dtctl.dtctl_action_run(ctx, action))
	assert supervisor.calls == [[str(ctx.svc_bin), flag, str(ctx.app_link)]]


def test_status_returns_probe_text(ctx: dtctl.Context, supervisor) -> None:
	supervisor.statuses = [DOWN]
	assert asyncio.run(dtctl.dtctl_action_run(ctx, "status")) == DOWN


def test_unknown_action(ctx: dtctl.Context, supervisor) -> None:
	with pytest.raises(dtctl.UnknownActionError):
		asyncio.run(dtctl.dtctl_action_run(ctx, "reload"))
	assert supervisor.calls == []


def test_all_restart_single_entry(
	config: dtctl.Config, app: dtctl.AppDefinition, supervisor, sleeps
) -> None:
	supervisor.statuses = [DOWN]
	rows = asyncio.run(dtctl.dtctl_action_run_all("restart", _registry(app), config))
	assert rows == [("web", "Success")]


@pytest.mark.parametrize("action", ["install", "generate", "save", "reload"])
def test_all_rejects_non_macro_actions(
	config: dtctl.Config, app: dtctl.AppDefinition, supervisor, action: str
) -> None:
	with pytest.raises(dtctl.MacroActionNotAllowedError):
		asyncio.run(dtctl.dtctl_action_run_all(action, _registry(app), config))
	assert supervisor.calls == []


def test_all_isolates_failures(
	config: dtctl.Config, app: dtctl.AppDefinition, supervisor
) -> None:
	registry = _registry(_named(app, "api"), app, _named(app, "worker"))
	broken = dtctl.dtctl_env_resolve(config, registry.apps["web"]).app_link
	supervisor.broken.add(str(broken))

	rows = asyncio.run(dtctl.dtctl_action_run_all("start", registry, config))

	assert [name for name, _ in rows] == ["api", "web", "worker"]
	assert rows[0] == ("api", "Success")
	assert rows[1][1].startswith(dtctl.OUTCOME_ERROR_PREFIX)
	assert rows[2] == ("worker", "Success")


def test_all_status_reports_text(
	config: dtctl.Config, app: dtctl.AppDefinition, supervisor
) -> None:
	supervisor.statuses = [DOWN]
	rows = asyncio.run(dtctl.dtctl_action_run_all("status", _registry(app), config))
	assert rows == [("web", DOWN)]


def test_status_all(config: dtctl.Config, app: dtctl.AppDefinition, supervisor) -> None:
	registry = _registry(app, _named(app, "api"))
	supervisor.broken.add(str(dtctl.dtctl_env_resolve(config, registry.apps["api"]).app_link))

	rows = asyncio.run(dtctl.dtctl_action_status_all(registry, config))

	assert rows[0] == ("web", "/service/web: up (pid 42) 10 seconds")
	assert rows[1][0] == "api"
	assert rows[1][1].startswith(dtctl.OUTCOME_ERROR_PREFIX)


def test_status_all_empty_registry(config: dtctl.Config, supervisor) -> None:
	rows = asyncio.run(dtctl.dtctl_action_status_all(dtctl.Registry(), config))
	assert rows == []
	assert dtctl.dtctl_util_table(["Name", "Status"], rows) == ["NAME  STATUS"]


def test_table_alignment() -> None:
	lines = dtctl.dtctl_util_table(["Name", "Status"], [("web", "up"), ("worker", "down")])
	assert lines == ["NAME    STATUS", "web     up", "worker  down"]


def test_invalid_entry_is_an_outcome_row(
	config: dtctl.Config, app: dtctl.AppDefinition, supervisor
) -> None:
	registry = _registry(app)
	registry.invalid["old"] = ({"name": "old"}, "missing or invalid 'cwd'")

	status = asyncio.run(dtctl.dtctl_action_status_all(registry, config))
	started = asyncio.run(dtctl.dtctl_action_run_all("start", registry, config))

	assert status[0] == ("web", "/service/web: up (pid 42) 10 seconds")
	assert status[1] == ("old", "error: missing or invalid 'cwd'")
	assert started == [("web", "Success"), ("old", "error: missing or invalid 'cwd'")]


def test_print_table_colors_failed_outcomes(monkeypatch, capsys) -> None:
	monkeypatch.setattr(dtctl, "dtctl_util_color", lambda text, color: f"<{color}>{text}")
	dtctl.dtctl_util_print_table(
		["Name", "Status"],
		[("web", "up (pid 42) 3 seconds, last error: none"), ("api", "error: boom")],
	)
	assert capsys.readouterr().out.splitlines() == [
		"<dim>NAME  STATUS",
		"web   up (pid 42) 3 seconds, last error: none",
		"<red>api   error: boom",
	]


@pytest.mark.parametrize("error", dtctl.DtctlError.__subclasses__(), ids=lambda e: e.__name__)
def test_error_classes_are_documented(error: type) -> None:
	assert error.__doc__ and error.__doc__.startswith("Raised ")
