import asyncio

import pytest

import blind_guess as bg

HEX = "0123456789abcdef"


def completion_round(scheduler, result):
    for i, (key, direction, accepted) in enumerate(scheduler.rounds):
        if key == result and direction == bg.BACKWARD and not accepted:
            return i
    raise AssertionError(f"{result!r} never completed")


def test_recovers_cafe(search, substring_oracle):
    s = search(substring_oracle("cafe"), right="", wrong="^", charset=HEX)

    assert s.results.as_set() == {"cafe"}
    keys = [key for key, _, _ in s.rounds]
    assert "ca" not in keys
    assert "ca" in s.pruned
    # the first round branches on every character of the secret
    assert s.rounds[0] == ("", bg.FORWARD, ["a", "c", "e", "f"])


def test_recovers_with_initial_string(search, substring_oracle):
    s = search(substring_oracle("cafe"), right="", wrong="^", charset=HEX, init="ca")
    assert s.results.as_set() == {"cafe"}
    assert s.rounds[0][:2] == ("ca", bg.FORWARD)


def test_search_is_reproducible(search, substring_oracle):
    first = search(substring_oracle("cafe", "beef"), right="", wrong="^", charset=HEX)
    second = search(substring_oracle("cafe", "beef"), right="", wrong="^", charset=HEX)

    assert first.results.as_set() == second.results.as_set() == {"cafe", "beef"}
    assert first.rounds == second.rounds
    assert first.pruned == second.pruned


def test_substrings_of_results_are_not_probed_again(search, substring_oracle):
    s = search(substring_oracle("cafe", "beef"), right="", wrong="^", charset=HEX)

    for result in s.results:
        done = completion_round(s, result)
        for key, _, _ in s.rounds[done + 1:]:
            assert not (len(key) > 1 and key in result), (key, result)


def test_branches_on_ambiguous_answers(search, substring_oracle):
    s = search(substring_oracle("ab", "ac"), right="", wrong="^", charset="abc", init="a")

    assert s.rounds[0] == ("a", bg.FORWARD, ["ab", "ac"])
    assert s.results.as_set() == {"ab", "ac"}
    assert list(s.results) == ["ab", "ac"]


def test_exhausted_forward_flips_to_backward_once(search, substring_oracle):
    s = search(substring_oracle("cafe", "beef"), right="", wrong="^", charset=HEX)

    for i, (key, direction, accepted) in enumerate(s.rounds):
        if direction != bg.FORWARD or accepted:
            continue
        later = [(k, d) for k, d, _ in s.rounds[i + 1:] if k == key]
        assert later.count((key, bg.BACKWARD)) == 1
        assert (key, bg.FORWARD) not in later

    forward_keys = [k for k, d, _ in s.rounds if d == bg.FORWARD]
    assert len(forward_keys) == len(set(forward_keys))


def test_concurrent_probes_stay_within_threads(search):
    live = {"now": 0, "max": 0}

    async def slow_prefix(candidate):
        live["now"] += 1
        live["max"] = max(live["max"], live["now"])
        await asyncio.sleep(0.005)
        live["now"] -= 1
        return 1 if "42".startswith(candidate) else 0

    s = search(
        bg.CallableOracle(slow_prefix),
        right="4",
        wrong="x",
        charset="0123456789",
        threads=3,
    )

    assert s.results.as_set() == {"42"}
    assert live["max"] <= 3
    assert s.pool.peak <= 3


def test_flaky_probe_is_retried(search, out):
    failed = []

    def flaky(candidate):
        if candidate == "42" and not failed:
            failed.append(candidate)
            raise bg.ExecutionError("connection reset")
        return 1 if "42".startswith(candidate) else 0

    s = search(bg.CallableOracle(flaky), right="4", wrong="x", charset="0123456789")

    assert s.results.as_set() == {"42"}
    assert s.indeterminate == 1
    assert "No usable answer" not in out.getvalue()


def test_dead_probe_counts_as_wrong_after_retries(search, out):
    def broken(candidate):
        if candidate == "42":
            raise bg.ExecutionError("exit status 1")
        return 1 if "42".startswith(candidate) else 0

    s = search(
        bg.CallableOracle(broken), right="4", wrong="x", charset="0123456789", retries=1
    )

    assert s.results.as_set() == {"4"}
    assert s.indeterminate == 2
    assert "No usable answer for '42'" in out.getvalue()


def test_nothing_extends_empty_seed(search, out):
    s = search(
        bg.CallableOracle(lambda c: 1 if c == "R" else 0), right="R", wrong="x", charset="ab"
    )

    assert len(s.results) == 0
    assert s.rounds == [("", bg.FORWARD, []), ("", bg.BACKWARD, [])]
    assert "Nothing extends" in out.getvalue()


def test_stop_finishes_after_current_round(console, prefix_oracle):
    config = bg.GuessConfig(right="4", wrong="x", charset="0123456789")

    async def go():
        client = bg.OracleClient(prefix_oracle("42"), console)
        await client.preflight(config.right, config.wrong)
        scheduler = bg.FrontierScheduler(config, client, bg.WorkerPool(2), console)
        real_probe = client.probe

        async def probe_then_stop(trial):
            scheduler.stop()
            return await real_probe(trial)

        client.probe = probe_then_stop
        await scheduler.run()
        return scheduler

    s = asyncio.run(go())
    assert len(s.rounds) == 1
    assert "4" in s.frontier
    assert len(s.results) == 0


def test_guess_end_to_end_42(console, out, prefix_oracle):
    calls = []
    config = bg.GuessConfig(right="4", wrong="x", charset="0123456789", threads=4)

    results = asyncio.run(bg.guess(config, oracle=prefix_oracle("42", calls=calls), console=console))

    assert results == {"42"}
    text = out.getvalue()
    assert "\x1b[2K42\n" in text
    assert "\n[*] Done in" in text
    # 10 preflight probes + 4 rounds of 10
    assert len(calls) == 50


def test_guess_survives_unstable_wrong_marker(console, out):
    flips = iter(range(1000))

    def score(candidate):
        if candidate == "x":
            return next(flips) % 2
        return 1 if "42".startswith(candidate) else 0

    config = bg.GuessConfig(right="4", wrong="x", charset="0123456789")
    results = asyncio.run(bg.guess(config, oracle=bg.CallableOracle(score), console=console))

    assert results == {"42"}
    assert "[!] Unstable" in out.getvalue()


def test_guess_abort_on_unstable(console):
    flips = iter(range(1000))

    def score(candidate):
        return next(flips) % 2 if candidate == "x" else 1

    config = bg.GuessConfig(right="4", wrong="x", charset="01", on_unstable="abort")
    with pytest.raises(bg.InstabilityError) as exc:
        asyncio.run(bg.guess(config, oracle=bg.CallableOracle(score), console=console))
    assert exc.value.candidate == "x"
