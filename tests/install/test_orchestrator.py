"""
Tests for the install state machine: cache hit, miss, broken cache,
build failures, cancellation and argument validation.
"""

import asyncio
from pathlib import Path

import pytest

from binstall.core.models.install import InstallOptions
from binstall.core.services.install import (
    CACHE_KEY,
    InstallPathIsDirectoryError,
    InvalidOptionError,
    ProviderError,
    TooManyArgumentsError,
    cache_identity,
    default_binary_name,
    install,
)
from binstall.core.services.install.domain.identity import resolve_target
from binstall.core.services.install.orchestration.orchestrator import (
    Installation,
    validate_options,
)

from conftest import (
    CRASH_SCRIPT,
    GOOD_SCRIPT,
    SLEEPY_SCRIPT,
    ScriptProvider,
    make_archive,
    pid_alive,
    read_pid,
)


def _ids(events) -> list[str]:
    return [e.id for e in events]


async def _until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition never became true"
        await asyncio.sleep(0.01)


def _pending_install_tasks() -> list[asyncio.Task]:
    return [
        t for t in asyncio.all_tasks()
        if not t.done() and (t.get_name() or "").startswith("install:")
    ]


def _seed(store, body: bytes = GOOD_SCRIPT, *, identity: str | None = None, files=None) -> None:
    files = files if files is not None else {default_binary_name(): body}
    store.seed(
        CACHE_KEY,
        make_archive(files),
        {"id": identity or cache_identity(ScriptProvider.default_version)},
    )


class TestCacheMiss:
    """Empty cache: provide, then populate the cache."""

    @pytest.mark.asyncio
    async def test_event_sequence(self, store, provider, workdir: Path):
        events = await install(cwd=workdir, store=store, provider=provider).wait()

        assert _ids(events) == [
            "search-cache",
            "download",
            "download:complete",
            "write-cache",
            "write-cache:complete",
        ]
        assert events[0].payload == {"found": False}

    @pytest.mark.asyncio
    async def test_binary_installed_and_cached(self, store, provider, workdir: Path):
        events = await install(cwd=workdir, store=store, provider=provider).wait()

        binary = workdir / default_binary_name()
        assert binary.read_bytes() == GOOD_SCRIPT
        _, metadata = store.entries[CACHE_KEY]
        assert metadata == {"id": cache_identity("1.0.0")}
        write = next(e for e in events if e.id == "write-cache")
        assert write.original_size == len(GOOD_SCRIPT)

    @pytest.mark.asyncio
    async def test_verifies_without_purging(self, store, provider, workdir: Path):
        await install(cwd=workdir, store=store, provider=provider).wait()
        assert "verify" in store.calls
        assert "remove" not in store.calls


class TestCacheHit:
    """Valid cache entry with matching identity: restore and check only."""

    @pytest.mark.asyncio
    async def test_second_run_restores(self, store, provider, workdir: Path):
        await install({"force_reinstall": True}, cwd=workdir, store=store, provider=provider).wait()
        (workdir / default_binary_name()).unlink()

        events = await install(cwd=workdir, store=store, provider=provider).wait()

        assert _ids(events) == [
            "search-cache",
            "restore-cache",
            "restore-cache:complete",
            "check-binary",
            "check-binary:complete",
        ]
        assert events[0].found is True
        assert provider.completed == 1
        assert (workdir / default_binary_name()).read_bytes() == GOOD_SCRIPT

    @pytest.mark.asyncio
    async def test_restored_binary_is_executable(self, store, provider, workdir: Path):
        _seed(store)
        await install(cwd=workdir, store=store, provider=provider).wait()

        mode = (workdir / default_binary_name()).stat().st_mode
        assert mode & 0o100

    @pytest.mark.asyncio
    async def test_no_writes_to_store(self, store, provider, workdir: Path):
        _seed(store)
        await install(cwd=workdir, store=store, provider=provider).wait()
        assert "put" not in store.calls
        assert "remove" not in store.calls


class TestBrokenCache:
    """Unusable entries fall back to the build path and purge the cache."""

    @pytest.mark.asyncio
    async def test_crashing_binary_rebuilds(self, store, provider, workdir: Path):
        _seed(store, CRASH_SCRIPT)

        events = await install(cwd=workdir, store=store, provider=provider).wait()

        assert _ids(events) == [
            "search-cache",
            "restore-cache",
            "restore-cache:complete",
            "check-binary",
            "check-binary:fail",
            "download",
            "download:complete",
            "write-cache",
            "write-cache:complete",
        ]
        failure = events[4].error
        assert failure.code == "ERR_CHECK_FAILED"
        assert failure.phase == "check-binary"
        assert failure.returncode == 3
        assert "remove" in store.calls
        assert (workdir / default_binary_name()).read_bytes() == GOOD_SCRIPT

    @pytest.mark.asyncio
    async def test_identity_mismatch_rebuilds(self, store, provider, workdir: Path):
        _seed(store, identity="0.0.1-plan9-mips")

        events = await install(cwd=workdir, store=store, provider=provider).wait()

        assert events[0].id == "search-cache"
        assert events[0].found is False
        assert "restore-cache" not in _ids(events)
        assert "remove" in store.calls
        _, metadata = store.entries[CACHE_KEY]
        assert metadata["id"] == cache_identity("1.0.0")

    @pytest.mark.asyncio
    async def test_version_option_changes_identity(self, store, provider, workdir: Path):
        _seed(store)

        events = await install(
            {"version": "2.0.0"}, cwd=workdir, store=store, provider=provider,
        ).wait()

        assert events[0].found is False
        _, metadata = store.entries[CACHE_KEY]
        assert metadata["id"] == cache_identity("2.0.0")

    @pytest.mark.asyncio
    async def test_two_files_is_invalid_cache(self, store, provider, workdir: Path):
        _seed(store, files={"purs": GOOD_SCRIPT, "extra": b"x"})

        events = await install(cwd=workdir, store=store, provider=provider).wait()

        assert _ids(events)[:3] == ["search-cache", "restore-cache", "restore-cache:fail"]
        failure = events[2].error
        assert failure.code == "EINVALIDCACHE"
        assert failure.phase == "restore-cache"
        assert "2" in str(failure)
        assert _ids(events)[-1] == "write-cache:complete"

    @pytest.mark.asyncio
    async def test_directory_only_is_invalid_cache(self, store, provider, workdir: Path):
        store.seed(
            CACHE_KEY,
            make_archive({}, dirs=("bin",)),
            {"id": cache_identity("1.0.0")},
        )

        events = await install(cwd=workdir, store=store, provider=provider).wait()

        assert events[2].id == "restore-cache:fail"
        assert events[2].error.code == "EINVALIDCACHE"

    @pytest.mark.asyncio
    async def test_corrupt_blob_rebuilds(self, store, provider, workdir: Path):
        store.seed(CACHE_KEY, b"definitely not gzip", {"id": cache_identity("1.0.0")})

        events = await install(cwd=workdir, store=store, provider=provider).wait()

        assert events[2].id == "restore-cache:fail"
        assert events[2].error.code == "ERR_ARCHIVE"
        assert _ids(events)[-1] == "write-cache:complete"


class TestInstallPathIsDirectory:

    @pytest.mark.asyncio
    async def test_fails_with_eisdir(self, store, provider, workdir: Path):
        (workdir / default_binary_name()).mkdir()

        run = install(cwd=workdir, store=store, provider=provider)
        events = []
        with pytest.raises(InstallPathIsDirectoryError) as exc_info:
            async for event in run:
                events.append(event)

        assert exc_info.value.code == "EISDIR"
        assert Path(exc_info.value.path).name == default_binary_name()
        assert events == []
        assert "put" not in store.calls

    @pytest.mark.asyncio
    async def test_fails_even_with_valid_cache(self, store, provider, workdir: Path):
        _seed(store)
        (workdir / default_binary_name()).mkdir()

        with pytest.raises(InstallPathIsDirectoryError):
            await install(cwd=workdir, store=store, provider=provider).wait()


class TestForcedReinstall:

    @pytest.mark.asyncio
    async def test_skips_cache_lookup(self, store, provider, workdir: Path):
        _seed(store)

        events = await install(
            {"force_reinstall": True}, cwd=workdir, store=store, provider=provider,
        ).wait()

        assert "info" not in store.calls
        assert _ids(events) == [
            "download",
            "download:complete",
            "write-cache",
            "write-cache:complete",
        ]

    @pytest.mark.asyncio
    async def test_accepts_options_model(self, store, provider, workdir: Path):
        options = InstallOptions(force_reinstall=True)
        events = await install(options, cwd=workdir, store=store, provider=provider).wait()
        assert events[0].id == "download"


class TestBuildFailures:

    @pytest.mark.asyncio
    async def test_provider_error_is_terminal(self, store, script_provider, workdir: Path):
        provider = script_provider(error=ProviderError("network down"))

        run = install({"force_reinstall": True}, cwd=workdir, store=store, provider=provider)
        events = []
        with pytest.raises(ProviderError, match="network down"):
            async for event in run:
                events.append(event)

        assert _ids(events) == ["download"]
        assert "verify" in store.calls
        assert "put" not in store.calls

    @pytest.mark.asyncio
    async def test_early_provider_error_surfaces_during_lookup(
        self, store, script_provider, workdir: Path,
    ):
        provider = script_provider(error_before_start=ProviderError("bad flag"))
        _seed(store)

        run = install(cwd=workdir, store=store, provider=provider)
        events = []
        with pytest.raises(ProviderError, match="bad flag"):
            async for event in run:
                events.append(event)

        assert events == []

    @pytest.mark.asyncio
    async def test_cache_write_failure_is_not_fatal(self, store, provider, workdir: Path):
        store.fail.add("put")

        events = await install(cwd=workdir, store=store, provider=provider).wait()

        assert _ids(events)[-1] == "write-cache:fail"
        assert events[-1].error.phase == "write-cache"
        assert (workdir / default_binary_name()).exists()

    @pytest.mark.asyncio
    async def test_unwritable_cache_is_not_fatal(self, store, provider, workdir: Path):
        store.fail.add("reserve_temp")

        events = await install(cwd=workdir, store=store, provider=provider).wait()

        assert _ids(events)[-2:] == ["write-cache", "write-cache:fail"]
        assert "put" not in store.calls

    @pytest.mark.asyncio
    async def test_failed_pack_stops_cache_reservation(
        self, store, script_provider, workdir: Path,
    ):
        store.hang.add("reserve_temp")
        provider = script_provider(produce=False)

        events = await install(
            {"force_reinstall": True}, cwd=workdir, store=store, provider=provider,
        ).wait()

        assert _ids(events) == ["download", "download:complete", "write-cache", "write-cache:fail"]
        assert isinstance(events[-1].error, OSError)
        if "reserve_temp" in store.calls:
            assert "reserve_temp" in store.cancelled
        await _until(lambda: not _pending_install_tasks())
        assert "put" not in store.calls

    @pytest.mark.asyncio
    async def test_cleaning_failures_are_ignored(self, store, provider, workdir: Path):
        store.fail.update({"remove", "verify"})
        _seed(store, identity="old-identity")

        events = await install(cwd=workdir, store=store, provider=provider).wait()

        assert _ids(events)[-1] == "write-cache:complete"

    @pytest.mark.asyncio
    async def test_cache_miss_from_store_error(self, store, provider, workdir: Path):
        store.fail.add("info")

        events = await install(cwd=workdir, store=store, provider=provider).wait()

        assert events[0].found is False
        assert _ids(events)[-1] == "write-cache:complete"


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_stops_events_and_provider(self, store, script_provider, workdir: Path):
        provider = script_provider(hang=True)
        run = install({"force_reinstall": True}, cwd=workdir, store=store, provider=provider)

        events = []
        async for event in run:
            events.append(event)
            if event.id == "download":
                run.cancel()

        assert _ids(events) == ["download"]
        assert run.cancelled
        await asyncio.wait_for(provider.cancelled.wait(), timeout=2)
        assert await run.wait() == []

    @pytest.mark.asyncio
    async def test_cancel_during_cache_lookup(self, store, provider, workdir: Path):
        store.hang.add("info")
        run = install(cwd=workdir, store=store, provider=provider)
        run.start()

        await _until(lambda: "info" in store.calls)
        run.cancel()

        assert await run.wait() == []
        await _until(lambda: "info" in store.cancelled)
        await _until(lambda: not _pending_install_tasks())

    @pytest.mark.asyncio
    async def test_cancel_after_lookup_drops_restore(self, store, provider, workdir: Path):
        _seed(store)
        run = install(cwd=workdir, store=store, provider=provider)

        events = []
        async for event in run:
            events.append(event)
            if event.id == "search-cache":
                run.cancel()

        assert _ids(events) == ["search-cache"]
        assert provider.completed == 0

    @pytest.mark.asyncio
    async def test_cancel_during_check_binary_kills_it(self, store, provider, workdir: Path):
        _seed(store, SLEEPY_SCRIPT)
        run = install(cwd=workdir, store=store, provider=provider)

        events = []
        pid = None
        async for event in run:
            events.append(event)
            if event.id == "check-binary":
                pid = await read_pid(workdir / "check.pid")
                run.cancel()

        assert _ids(events) == [
            "search-cache",
            "restore-cache",
            "restore-cache:complete",
            "check-binary",
        ]
        assert pid is not None
        await _until(lambda: not pid_alive(pid))
        await _until(lambda: not _pending_install_tasks())
        assert provider.completed == 0

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, store, provider, workdir: Path):
        run = install(cwd=workdir, store=store, provider=provider)
        run.cancel()

        assert await run.wait() == []
        assert store.calls == []
        assert provider.started == 0

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_noop(self, store, provider, workdir: Path):
        run = install({"force_reinstall": True}, cwd=workdir, store=store, provider=provider)
        await run.wait()

        run.cancel()
        assert not run.cancelled


class TestArguments:
    """Argument errors are raised synchronously, before any work."""

    def test_too_many_arguments(self):
        with pytest.raises(TooManyArgumentsError) as exc_info:
            install({}, {})
        assert exc_info.value.code == "ERR_TOO_MANY_ARGS"
        assert "2 arguments" in str(exc_info.value)

    def test_non_mapping(self):
        with pytest.raises(InvalidOptionError) as exc_info:
            install(["force_reinstall"])
        assert exc_info.value.code == "ERR_INVALID_ARG_TYPE"

    def test_non_bool_force_reinstall(self):
        with pytest.raises(InvalidOptionError, match="force_reinstall"):
            validate_options({"force_reinstall": "yes"})

    def test_non_callable_rename(self):
        with pytest.raises(InvalidOptionError, match="rename"):
            validate_options({"rename": "binary"})

    def test_invalid_timeout(self):
        with pytest.raises(InvalidOptionError):
            validate_options({"timeout": "soon"})

    def test_unknown_options_pass_through(self):
        options = validate_options({"mirror": "https://example.invalid"})
        assert options.extra == {"mirror": "https://example.invalid"}

    def test_rename_must_be_plain_name(self, store, provider, workdir: Path):
        with pytest.raises(InvalidOptionError):
            install({"rename": lambda name: "sub/dir"}, cwd=workdir, store=store, provider=provider)

    @pytest.mark.asyncio
    async def test_rename_sets_install_path(self, store, provider, workdir: Path):
        seen = []

        def rename(default: str) -> str:
            seen.append(default)
            return "my-tool"

        await install(
            {"rename": rename, "force_reinstall": True},
            cwd=workdir, store=store, provider=provider,
        ).wait()

        assert seen == [default_binary_name()]
        assert (workdir / "my-tool").read_bytes() == GOOD_SCRIPT
        assert not (workdir / default_binary_name()).exists()

    def test_installation_needs_a_run(self, store, provider, workdir: Path):
        installation = Installation(
            InstallOptions(),
            resolve_target(workdir, default_binary_name()),
            cache_identity(provider.default_version),
            store=store,
            provider=provider,
        )
        with pytest.raises(RuntimeError, match="not being driven"):
            installation.run
