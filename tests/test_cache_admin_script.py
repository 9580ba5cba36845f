from __future__ import annotations

import pytest

from fluxfilter.config import load_settings
from fluxfilter.repositories.database import Database
from fluxfilter.repositories.response_cache_repository import ResponseCacheRepository
from fluxfilter.scripts import cache_admin


def _seed_cache() -> ResponseCacheRepository:
    settings = load_settings()
    database = Database(settings.db_path)
    database.initialize()
    repository = ResponseCacheRepository(database)
    repository.put("bilibili:summary:BV1", {"summary": "a"}, identity="1:1")
    repository.put("bilibili:summary:BV2", {"summary": "b"}, identity="2:2")
    repository.put("bilibili:subtitles:BV1", {"body": []}, identity="1:1:zh-CN")
    return repository


def test_sweep_command_removes_prefix(capsys: pytest.CaptureFixture[str]) -> None:
    repository = _seed_cache()

    cache_admin.main(["sweep", "--prefix", "bilibili:summary:"])

    output = capsys.readouterr().out
    assert "Removed 2 cache entries with prefix: bilibili:summary:" in output
    assert repository.count_by_namespace() == {"bilibili:subtitles:": 1}


def test_stats_command_lists_namespaces(capsys: pytest.CaptureFixture[str]) -> None:
    _seed_cache()

    cache_admin.main(["stats"])

    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "namespace\tentries"
    assert "bilibili:subtitles:\t1" in lines
    assert "bilibili:summary:\t2" in lines


def test_stats_command_on_empty_cache(capsys: pytest.CaptureFixture[str]) -> None:
    cache_admin.main(["stats"])

    assert capsys.readouterr().out.strip() == "Response cache is empty."


def test_sweep_command_rejects_blank_prefix() -> None:
    with pytest.raises(SystemExit):
        cache_admin.main(["sweep", "--prefix", " "])
