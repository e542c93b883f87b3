"""Unit tests for the CLI: locators, manifest discovery, parser and worker runner."""

from __future__ import annotations

import asyncio
import textwrap
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from result import Err, Ok

from tasklane.core import cli
from tasklane.core.errors import ConfigurationError, ErrorCode
from tasklane.core.models.app import AppConfig
from tasklane.core.models.broker import DatabaseConfig
from tasklane.core.registry.tasks import TaskRegistry
from tasklane.core.types.result_types import BrokerError, PersistenceError
from tasklane.core.utils.imports import find_project_root, is_file_path, parse_locator

from support import DB_URL, make_definition

pytestmark = pytest.mark.unit

MANIFEST = textwrap.dedent(
    """
    from pydantic import BaseModel

    from tasklane import define_task, pydantic_validator


    class Payload(BaseModel):
        n: int


    async def handle(payload, ctx):
        return payload.n


    square = define_task('demo:square', validator=pydantic_validator(Payload), handler=handle)
    definitions = [square]
    not_tasks = {'a': 1}
    """
)


class TestLocators:
    @pytest.mark.parametrize(
        ('locator', 'expected'),
        [
            ('app.tasks:registry', ('app.tasks', 'registry')),
            ('app/tasks.py:registry', ('app/tasks.py', 'registry')),
            ('app.tasks', ('app.tasks', None)),
            ('app.tasks:', ('app.tasks', None)),
        ],
    )
    def test_parse_locator(self, locator: str, expected: tuple[str, Any]) -> None:
        assert parse_locator(locator) == expected

    def test_is_file_path(self) -> None:
        assert is_file_path('app/tasks.py')
        assert is_file_path('tasks.py')
        assert not is_file_path('app.tasks')

    def test_find_project_root(self, tmp_path: Path) -> None:
        assert find_project_root(str(tmp_path)) is None
        (tmp_path / 'pyproject.toml').write_text('[project]\nname = "x"\n')
        assert find_project_root(str(tmp_path)) == str(tmp_path)


class TestDiscover:
    def test_file_manifest_list(self, tmp_path: Path) -> None:
        path = tmp_path / 'manifest_list.py'
        path.write_text(MANIFEST)

        registry = cli.discover_definitions(f'{path}:definitions')

        assert list(registry) == ['demo:square']

    def test_single_definition(self, tmp_path: Path) -> None:
        path = tmp_path / 'manifest_single.py'
        path.write_text(MANIFEST)

        registry = cli.discover_definitions(f'{path}:square')

        assert len(registry) == 1

    def test_missing_attr_part(self) -> None:
        with pytest.raises(ConfigurationError) as info:
            cli.discover_definitions('app.tasks')
        assert info.value.code == ErrorCode.CLI_INVALID_LOCATOR

    def test_missing_module(self) -> None:
        with pytest.raises(ConfigurationError) as info:
            cli.discover_definitions('no_such_module_xyz.tasks:registry')
        assert 'module not found' in info.value.message

    def test_missing_attribute(self, tmp_path: Path) -> None:
        path = tmp_path / 'manifest_attr.py'
        path.write_text(MANIFEST)
        with pytest.raises(ConfigurationError) as info:
            cli.discover_definitions(f'{path}:registry')
        assert "has no attribute 'registry'" in info.value.message

    def test_rejects_non_manifest(self, tmp_path: Path) -> None:
        path = tmp_path / 'manifest_bad.py'
        path.write_text(MANIFEST)
        with pytest.raises(ConfigurationError) as info:
            cli.discover_definitions(f'{path}:not_tasks')
        assert info.value.code == ErrorCode.CLI_INVALID_LOCATOR


class TestAsRegistry:
    def test_registry_passthrough(self) -> None:
        registry = TaskRegistry([make_definition()])
        assert cli._as_registry(registry, 'x:y') is registry

    def test_tuple_of_definitions(self) -> None:
        registry = cli._as_registry((make_definition(),), 'x:y')
        assert 'emails:send' in registry

    @pytest.mark.parametrize('obj', [None, 42, ['not a definition'], {'a': 1}])
    def test_rejects_other_objects(self, obj: Any) -> None:
        with pytest.raises(ConfigurationError):
            cli._as_registry(obj, 'x:y')


class TestParser:
    def test_worker_command(self) -> None:
        args = cli.build_parser().parse_args(['worker', 'app.tasks:registry', '--loglevel', 'debug'])
        assert args.command == 'worker'
        assert args.locator == 'app.tasks:registry'
        assert args.loglevel == 'DEBUG'

    def test_init_db_override(self) -> None:
        args = cli.build_parser().parse_args(['init-db', '--database-url', DB_URL])
        assert args.database_url == DB_URL

    def test_default_loglevel_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv('TASKLANE_LOG_LEVEL', 'warning')
        args = cli.build_parser().parse_args(['worker', 'a:b'])
        assert args.loglevel == 'WARNING'

    def test_invalid_env_loglevel_falls_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv('TASKLANE_LOG_LEVEL', 'chatty')
        args = cli.build_parser().parse_args(['worker', 'a:b'])
        assert args.loglevel == 'INFO'

    def test_no_command_exits(self) -> None:
        with pytest.raises(SystemExit) as info:
            cli.main([])
        assert info.value.code == 1

    def test_load_config_override(self) -> None:
        config = cli._load_config(DB_URL)
        assert config.database.database_url == DB_URL


def _config() -> AppConfig:
    return AppConfig(database=DatabaseConfig(database_url=DB_URL))


def _fake_context(workers: list[MagicMock], init_result: Any = None) -> MagicMock:
    context = MagicMock()
    context.init = AsyncMock(return_value=init_result if init_result is not None else Ok(None))
    context.close = AsyncMock()
    context.worker = MagicMock(side_effect=workers)
    return context


def _fake_worker(name: str, start_result: Any = None) -> MagicMock:
    worker = MagicMock()
    worker.queue_name = name
    worker.start = AsyncMock(return_value=start_result if start_result is not None else Ok(None))
    worker.stop = AsyncMock()
    return worker


class TestRunWorkers:
    @pytest.mark.asyncio
    async def test_schema_failure_exits_nonzero(self) -> None:
        worker = _fake_worker('a')
        context = _fake_context([worker], Err(PersistenceError(message='db down')))
        registry = TaskRegistry([make_definition()])

        with patch.object(cli, 'AppContext', return_value=context):
            code = await cli.run_workers(_config(), registry)

        assert code == 1
        worker.start.assert_not_awaited()
        context.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_failure_stops_started_workers(self) -> None:
        first = _fake_worker('a')
        second = _fake_worker('b', Err(BrokerError(message='no broker')))
        context = _fake_context([first, second])
        registry = TaskRegistry([make_definition(), _other_definition()])

        with patch.object(cli, 'AppContext', return_value=context):
            code = await cli.run_workers(_config(), registry)

        assert code == 1
        first.stop.assert_awaited_once()
        second.stop.assert_not_awaited()
        context.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_runs_until_stopped(self) -> None:
        worker = _fake_worker('a')
        context = _fake_context([worker])
        registry = TaskRegistry([make_definition()])

        with patch.object(cli, 'AppContext', return_value=context):
            task = asyncio.create_task(cli.run_workers(_config(), registry))
            await asyncio.sleep(0.05)
            assert not task.done()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        worker.start.assert_awaited_once()
        worker.stop.assert_awaited_once()
        context.close.assert_awaited_once()


def _other_definition() -> Any:
    from tasklane.core.definition import define_task

    async def handle(payload: Any, ctx: Any) -> Any:
        return None

    return define_task('other:queue', validator=lambda data: Ok(data), handler=handle)
