import asyncio
import io
import shlex
import sys

import pytest

import blind_guess as bg


@pytest.fixture
def out():
    return io.StringIO()


@pytest.fixture
def console(out):
    return bg.Console(stream=out)


@pytest.fixture
def substring_oracle():
    """Scores 1 when the candidate occurs inside one of ``secrets``."""

    def _make(*secrets, calls=None):
        def _score(candidate):
            if calls is not None:
                calls.append(candidate)
            return 1 if any(candidate in s for s in secrets) else 0

        return bg.CallableOracle(_score)

    return _make


@pytest.fixture
def prefix_oracle():
    """Scores 1 when the candidate is a prefix of ``secret``."""

    def _make(secret, calls=None):
        def _score(candidate):
            if calls is not None:
                calls.append(candidate)
            return 1 if secret.startswith(candidate) else 0

        return bg.CallableOracle(_score)

    return _make


@pytest.fixture
def search(console):
    """Preflight and run a scheduler, returning it for inspection."""

    def _run(oracle, **cfg):
        config = bg.GuessConfig(**cfg)

        async def _go():
            client = bg.OracleClient(
                oracle, console, repeat=config.repeat, on_unstable=config.on_unstable
            )
            await client.preflight(config.right, config.wrong)
            pool = bg.WorkerPool(config.threads, config.inter_probe_delay)
            scheduler = bg.FrontierScheduler(config, client, pool, console)
            await scheduler.run()
            return scheduler

        return asyncio.run(_go())

    return _run


@pytest.fixture
def oracle_script(tmp_path):
    """Write a python oracle script and return a command line running it."""

    def _make(body):
        path = tmp_path / "oracle.py"
        path.write_text(body)
        return f"{shlex.quote(sys.executable)} {shlex.quote(str(path))}"

    return _make
