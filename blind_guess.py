#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# Blind string guesser: recovers a secret one character at a time from a pass/fail oracle
# (blind SQL/command injection side channels). The oracle is a command that reads the candidate
# on stdin, or a URL, and answers with an integer score on the first line of its output.
#
# Minimal flags: --cmd "CMD ARGS" (default "sh curl.sh") or --url URL (use {guess} for GET)
# Useful: --right/--wrong markers, --charset, --init, --threads, --delay MS, --timeout S,
#         --repeat N, --retries N, --on-unstable warn|abort, -q/--silent, --debug
#
import argparse
import asyncio
import heapq
import inspect
import re
import shlex
import sys
import time
from collections import Counter
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Set, Tuple
from urllib.parse import quote

import aiohttp

# -----------------------------
# Defaults & hard limits
# -----------------------------
DEFAULT_CMD = "sh curl.sh"
DEFAULT_RIGHT = " "
DEFAULT_WRONG = "^"
DEFAULT_CHARSET = "0123456789abcdef"
DEFAULT_INIT = ""
DEFAULT_THREADS = 10
DEFAULT_DELAY_MS = 0
DEFAULT_TIMEOUT = 30.0  # seconds per oracle call
DEFAULT_REPEAT = 5  # stability probes per marker
DEFAULT_RETRIES = 2  # re-probes of an indeterminate trial

MIN_THREADS, MAX_THREADS = 1, 256
MIN_REPEAT, MAX_REPEAT = 1, 20
MIN_RETRIES, MAX_RETRIES = 0, 10

UNSTABLE_POLICIES = ("warn", "abort")

# decimal, ASCII digits only
SCORE_RE = re.compile(r"[+-]?[0-9]+\Z")

# Search directions
FORWARD = "->"
BACKWARD = "<-"

# Probe outcomes
ACCEPTED = "accepted"
REJECTED = "rejected"
INDETERMINATE = "indeterminate"


# -----------------------------
# Errors
# -----------------------------
class GuessError(RuntimeError):
    pass


class ExecutionError(GuessError):
    """The oracle could not be invoked, or did not finish cleanly."""


class ParseError(GuessError):
    """The first line of the oracle output is not an integer."""


class InstabilityError(GuessError):
    def __init__(self, candidate: str, scores: List[int]):
        self.candidate = candidate
        self.scores = list(scores)
        super().__init__(f"oracle is unstable for {candidate!r}: scores {self.scores}")

    def most_common(self) -> int:
        return Counter(self.scores).most_common(1)[0][0]


# -----------------------------
# Console (ticker-safe printing)
# -----------------------------
class Console:
    """Tagged stdout output shared by every component of a run.

    ``verbose`` enables ``[dbg]`` lines. ``silent`` suppresses the progress
    ticker, streamed results, info and warnings; errors are always shown.
    """

    def __init__(self, verbose: bool = False, silent: bool = False, stream=None):
        self.verbose = verbose
        self.silent = silent
        self.stream = stream if stream is not None else sys.stdout
        self._ticker = False

    def _erase_line(self):
        # ANSI erase-current-line, return to start
        if self._ticker:
            self.stream.write("\r\033[2K")
            self._ticker = False

    def println(self, s: str = ""):
        self._erase_line()
        self.stream.write(s + "\n")
        self.stream.flush()

    def info(self, msg: str):
        if not self.silent:
            self.println(f"[*] {msg}")

    def warn(self, msg: str):
        if not self.silent:
            self.println(f"[!] {msg}")

    def error(self, msg: str):
        self.println(f"[!] {msg}")

    def debug(self, msg: str):
        if self.verbose:
            self.println(f"[dbg] {msg}")

    def progress(self, key: str):
        # single-line ticker with the current key; replaced by the next line printed
        if self.silent or self.verbose or not key:
            return
        self.stream.write(f"\r\033[2K{key}")
        self.stream.flush()
        self._ticker = True

    def result(self, key: str):
        if not self.silent:
            self.println(key)

    def clear(self):
        self._erase_line()
        self.stream.flush()


# -----------------------------
# Configuration
# -----------------------------
def clamp(v, lo, hi):
    return max(lo, min(hi, v))


class GuessConfig:
    def __init__(
        self,
        cmd: str = DEFAULT_CMD,
        url: Optional[str] = None,
        right: str = DEFAULT_RIGHT,
        wrong: str = DEFAULT_WRONG,
        charset: str = DEFAULT_CHARSET,
        init: str = DEFAULT_INIT,
        threads: int = DEFAULT_THREADS,
        delay: int = DEFAULT_DELAY_MS,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        repeat: int = DEFAULT_REPEAT,
        retries: int = DEFAULT_RETRIES,
        on_unstable: str = "warn",
        verbose: bool = False,
        silent: bool = False,
    ):
        # duplicated characters would produce duplicated trials
        charset = "".join(dict.fromkeys(charset or ""))
        if not charset:
            raise ValueError("charset must contain at least one character")
        if on_unstable not in UNSTABLE_POLICIES:
            raise ValueError(
                f"on_unstable must be one of {', '.join(UNSTABLE_POLICIES)}, got {on_unstable!r}"
            )
        if not url and not shlex.split(cmd or ""):
            raise ValueError("oracle command is empty (give --cmd or --url)")
        self.cmd = cmd
        self.url = url
        self.right = right
        self.wrong = wrong
        self.charset = charset
        self.init = init or ""
        self.threads = clamp(int(threads), MIN_THREADS, MAX_THREADS)
        self.delay = max(0, int(delay or 0))
        self.timeout = timeout if (timeout and timeout > 0) else None
        self.repeat = clamp(int(repeat), MIN_REPEAT, MAX_REPEAT)
        self.retries = clamp(int(retries), MIN_RETRIES, MAX_RETRIES)
        self.on_unstable = on_unstable
        self.verbose = bool(verbose)
        self.silent = bool(silent)

    @property
    def inter_probe_delay(self) -> float:
        return self.delay / 1000.0

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "GuessConfig":
        return cls(
            cmd=args.cmd,
            url=args.url,
            right=args.right,
            wrong=args.wrong,
            charset=args.charset,
            init=args.init,
            threads=args.threads,
            delay=args.delay,
            timeout=args.timeout,
            repeat=args.repeat,
            retries=args.retries,
            on_unstable=args.on_unstable,
            verbose=args.debug,
            silent=args.silent,
        )


# -----------------------------
# Oracle transports
# -----------------------------
def parse_score(out: str) -> int:
    first = (out or "").split("\n", 1)[0].strip()
    if not SCORE_RE.match(first):
        raise ParseError(f"first output line is not an integer: {first[:60]!r}")
    return int(first)


class Oracle:
    """Anything that turns a candidate string into an integer score."""

    async def run_once(self, candidate: str) -> int:
        raise NotImplementedError

    async def close(self):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()


def _kill(proc):
    try:
        proc.kill()
    except ProcessLookupError:
        pass


class CommandOracle(Oracle):
    """Runs ``command`` once per probe, candidate on stdin, score on stdout."""

    def __init__(self, command: str, timeout: Optional[float] = DEFAULT_TIMEOUT):
        self.argv = shlex.split(command or "")
        if not self.argv:
            raise ValueError("oracle command is empty")
        self.timeout = timeout

    async def run_once(self, candidate: str) -> int:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise ExecutionError(f"cannot start {self.argv[0]}: {e}") from e
        try:
            out, _ = await asyncio.wait_for(
                proc.communicate((candidate + "\n").encode()), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            _kill(proc)
            await proc.wait()
            raise ExecutionError(f"oracle timed out after {self.timeout}s") from None
        except asyncio.CancelledError:
            _kill(proc)
            await asyncio.shield(proc.wait())
            raise
        if proc.returncode != 0:
            raise ExecutionError(f"oracle exited with status {proc.returncode}")
        return parse_score(out.decode(errors="replace"))


class HttpOracle(Oracle):
    """Asks an HTTP endpoint for the score.

    A ``{guess}`` placeholder in the URL is replaced with the quoted
    candidate and a GET is sent; otherwise the candidate is POSTed as the
    request body, newline-terminated. The first line of the response body is
    the score.
    """

    def __init__(self, url: str, timeout: Optional[float] = DEFAULT_TIMEOUT):
        self.url = url
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(ssl=False),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self):
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def run_once(self, candidate: str) -> int:
        if "{guess}" in self.url:
            method = "GET"
            url = self.url.replace("{guess}", quote(candidate, safe=""))
            data = None
        else:
            method = "POST"
            url = self.url
            data = candidate + "\n"
        try:
            async with self._get_session().request(method, url, data=data) as resp:
                text = await resp.text(errors="replace")
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ExecutionError(f"{method} {url} failed: {e!r}") from e
        if status >= 400:
            raise ExecutionError(f"{method} {url} -> HTTP {status}")
        return parse_score(text)


class CallableOracle(Oracle):
    """Wraps a plain or async ``func(candidate)`` returning an int (or text)."""

    def __init__(self, func: Callable[[str], Any]):
        self.func = func

    async def run_once(self, candidate: str) -> int:
        try:
            res = self.func(candidate)
            if inspect.isawaitable(res):
                res = await res
        except GuessError:
            raise
        except Exception as e:
            raise ExecutionError(f"oracle callable failed: {e!r}") from e
        if isinstance(res, str):
            return parse_score(res)
        try:
            return int(res)
        except (TypeError, ValueError):
            raise ParseError(f"oracle returned a non-integer score: {res!r}") from None


def build_oracle(config: GuessConfig) -> Oracle:
    if config.url:
        return HttpOracle(config.url, timeout=config.timeout)
    return CommandOracle(config.cmd, timeout=config.timeout)


# -----------------------------
# Oracle client (scores, stability, probes)
# -----------------------------
class ProbeResult:
    __slots__ = ("trial", "outcome", "score", "error")

    def __init__(self, trial: str, outcome: str, score: Optional[int] = None, error: Optional[str] = None):
        self.trial = trial
        self.outcome = outcome
        self.score = score
        self.error = error

    def __repr__(self):
        return f"ProbeResult({self.trial!r}, {self.outcome}, score={self.score})"


class OracleClient:
    def __init__(
        self,
        oracle: Oracle,
        console: Console,
        repeat: int = DEFAULT_REPEAT,
        on_unstable: str = "warn",
    ):
        self.oracle = oracle
        self.console = console
        self.repeat = repeat
        self.on_unstable = on_unstable
        self.baseline: Optional[int] = None
        self.sent = 0

    async def run_once(self, candidate: str) -> int:
        self.sent += 1
        self.console.debug(f"Executing oracle with {candidate!r}")
        score = await self.oracle.run_once(candidate)
        self.console.debug(f"Score {score} for {candidate!r}")
        return score

    async def score(self, candidate: str, repeat: int) -> int:
        scores = []
        for _ in range(max(1, repeat)):
            scores.append(await self.run_once(candidate))
        if len(set(scores)) > 1:
            raise InstabilityError(candidate, scores)
        return scores[0]

    async def _stable_score(self, marker: str) -> int:
        try:
            return await self.score(marker, self.repeat)
        except InstabilityError as e:
            if self.on_unstable == "abort":
                raise
            self.console.warn(f"Unstable: {e}")
            return e.most_common()

    async def preflight(self, right: str, wrong: str) -> int:
        """Establish the baseline score from the right/wrong markers.

        Invocation and parse errors are fatal here: without a baseline
        there is nothing to compare probes against.
        """
        if self.baseline is not None:
            raise GuessError("baseline is already established for this run")
        self.console.debug("Checking stability: right guess")
        right_score = await self._stable_score(right)
        self.console.debug("Checking stability: wrong guess")
        wrong_score = await self._stable_score(wrong)
        if wrong_score == right_score:
            msg = f"right and wrong markers both score {right_score}; the oracle cannot tell them apart"
            if self.on_unstable == "abort":
                raise GuessError(msg)
            self.console.warn(msg)
        self.baseline = right_score
        self.console.info(f"Baseline score {right_score} (wrong marker scores {wrong_score})")
        return right_score

    async def probe(self, trial: str) -> ProbeResult:
        if self.baseline is None:
            raise GuessError("probe before preflight: no baseline score")
        try:
            score = await self.run_once(trial)
        except (ExecutionError, ParseError) as e:
            self.console.debug(f"{trial!r} is indeterminate: {e}")
            return ProbeResult(trial, INDETERMINATE, error=str(e))
        outcome = ACCEPTED if score == self.baseline else REJECTED
        return ProbeResult(trial, outcome, score=score)


# -----------------------------
# Bounded worker pool
# -----------------------------
class WorkerPool:
    """Runs one round of probes, at most ``max_concurrency`` at a time.

    ``inter_probe_delay`` (seconds) is the minimum spacing between two probe
    launches. ``run`` returns when every probe has finished, results in
    submission order.
    """

    def __init__(self, max_concurrency: int = DEFAULT_THREADS, inter_probe_delay: float = 0.0):
        self.max_concurrency = max(1, int(max_concurrency))
        self.inter_probe_delay = max(0.0, float(inter_probe_delay or 0.0))
        self.live = 0
        self.peak = 0
        self.launched = 0

    async def run(self, task_factories: List[Callable[[], Awaitable[Any]]]) -> List[Any]:
        sem = asyncio.Semaphore(self.max_concurrency)
        pace = asyncio.Lock()

        async def _wrap(factory: Callable[[], Awaitable[Any]]):
            async with sem:
                if self.inter_probe_delay:
                    async with pace:
                        await asyncio.sleep(self.inter_probe_delay)
                self.live += 1
                self.launched += 1
                self.peak = max(self.peak, self.live)
                try:
                    return await factory()
                finally:
                    self.live -= 1

        tasks = [asyncio.ensure_future(_wrap(f)) for f in task_factories]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for t in tasks:
                t.cancel()
            raise


# -----------------------------
# Frontier & results
# -----------------------------
class Frontier:
    """Pending candidates, longest first; equal lengths leave in insertion order.

    Pushing a key that is already pending overwrites its direction and moves
    it behind the other keys of the same length.
    """

    def __init__(self):
        self._dirs: Dict[str, str] = {}
        self._seq: Dict[str, int] = {}
        self._heap: List[Tuple[int, int, str]] = []
        self._counter = 0

    def push(self, key: str, direction: str):
        self._counter += 1
        self._dirs[key] = direction
        self._seq[key] = self._counter
        heapq.heappush(self._heap, (-len(key), self._counter, key))

    def pop(self) -> Tuple[str, str]:
        while self._heap:
            _, seq, key = heapq.heappop(self._heap)
            if self._seq.get(key) != seq:
                continue  # stale
            del self._seq[key]
            return key, self._dirs.pop(key)
        raise KeyError("pop from an empty frontier")

    def get(self, key: str) -> Optional[str]:
        return self._dirs.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._dirs

    def __len__(self) -> int:
        return len(self._dirs)


class ResultSet:
    def __init__(self):
        self._items: Dict[str, None] = {}

    def add(self, s: str) -> bool:
        if s in self._items:
            return False
        self._items[s] = None
        return True

    def contains_substring(self, s: str) -> bool:
        return any(s in r for r in self._items)

    def as_set(self) -> Set[str]:
        return set(self._items)

    def __contains__(self, s: str) -> bool:
        return s in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)


# -----------------------------
# Search
# -----------------------------
class FrontierScheduler:
    def __init__(
        self,
        config: GuessConfig,
        client: OracleClient,
        pool: WorkerPool,
        console: Console,
        results: Optional[ResultSet] = None,
    ):
        self.config = config
        self.client = client
        self.pool = pool
        self.console = console
        self.alphabet = config.charset
        self.seed = config.init
        self.frontier = Frontier()
        self.results = results if results is not None else ResultSet()
        # (key, direction, accepted trials) per round, in order
        self.rounds: List[Tuple[str, str, List[str]]] = []
        self.pruned: List[str] = []
        self.indeterminate = 0
        self._forward_done: Set[str] = set()
        self._stopped = False

    def stop(self):
        """Finish after the round in flight."""
        self._stopped = True

    @staticmethod
    def trial(key: str, direction: str, c: str) -> str:
        return key + c if direction == FORWARD else c + key

    async def _probe_round(self, key: str, direction: str) -> Tuple[List[str], Set[str]]:
        pending = [self.trial(key, direction, c) for c in self.alphabet]
        accepted: List[str] = []
        rejects: Set[str] = set()
        attempt = 0
        while pending:
            results = await self.pool.run([partial(self.client.probe, t) for t in pending])
            pending = []
            for r in results:
                if r.outcome == ACCEPTED:
                    accepted.append(r.trial)
                elif r.outcome == REJECTED:
                    rejects.add(r.trial)
                else:
                    pending.append(r.trial)
            if not pending:
                break
            self.indeterminate += len(pending)
            if attempt >= self.config.retries:
                self.console.warn(
                    f"No usable answer for {', '.join(repr(t) for t in pending)}; counted as wrong"
                )
                rejects.update(pending)
                pending = []
            else:
                attempt += 1
                self.console.debug(
                    f"Retrying {len(pending)} indeterminate probe(s), attempt {attempt}"
                )
        return accepted, rejects

    def _enqueue(self, trial: str, direction: str):
        if trial in self.results:
            return
        if direction == FORWARD and trial in self._forward_done:
            direction = BACKWARD
        self.frontier.push(trial, direction)

    def _complete(self, key: str):
        if not key:
            self.console.warn("Nothing extends the initial string in either direction")
            return
        if self.results.add(key):
            self.console.result(key)

    async def run(self) -> ResultSet:
        self.frontier.push(self.seed, FORWARD)
        while self.frontier and not self._stopped:
            key, direction = self.frontier.pop()
            self.console.debug(f"Next guess: {key!r} {direction}")

            if len(key) > len(self.seed) + 1 and self.results.contains_substring(key):
                self.console.debug(f"{key!r} is a substring of a previous result. Next.")
                self.pruned.append(key)
                continue

            accepted, rejects = await self._probe_round(key, direction)
            self.rounds.append((key, direction, accepted))
            for t in accepted:
                self.console.debug(f"{t!r} was a RIGHT guess")
                self._enqueue(t, direction)

            # every character was wrong: this end of the string is reached
            if len(rejects) == len(self.alphabet):
                if direction == FORWARD:
                    self.console.debug(f"Guessing {key!r} in {BACKWARD} direction")
                    self._forward_done.add(key)
                    self.frontier.push(key, BACKWARD)
                else:
                    self.console.debug(f"Finished guessing {key!r}")
                    self._complete(key)
            else:
                self.console.progress(key)
        self.console.clear()
        return self.results


# -----------------------------
# Run orchestration
# -----------------------------
async def guess(
    config: GuessConfig,
    oracle: Optional[Oracle] = None,
    console: Optional[Console] = None,
    results: Optional[ResultSet] = None,
) -> Set[str]:
    """Preflight the oracle, then search until the frontier is empty.

    Strings are added to ``results`` as they complete, so a caller holding
    it still sees them when the run is cancelled.
    """
    if console is None:
        console = Console(verbose=config.verbose, silent=config.silent)
    if oracle is None:
        oracle = build_oracle(config)
    start = time.perf_counter()
    async with oracle:
        client = OracleClient(oracle, console, repeat=config.repeat, on_unstable=config.on_unstable)
        await client.preflight(config.right, config.wrong)
        pool = WorkerPool(config.threads, config.inter_probe_delay)
        scheduler = FrontierScheduler(config, client, pool, console, results=results)
        console.info(
            f"Settings -> charset={config.charset!r} init={config.init!r} threads={config.threads} delay={config.delay}ms"
        )
        try:
            await scheduler.run()
        finally:
            console.clear()
            console.info(
                f"Done in {time.perf_counter() - start:.1f}s. Rounds: {len(scheduler.rounds)}, "
                f"probes: {client.sent}, indeterminate: {scheduler.indeterminate}, "
                f"peak concurrency: {pool.peak}"
            )
    return scheduler.results.as_set()


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Recover a secret string one character at a time from a pass/fail oracle",
        epilog="Exit status: 0 when the search finishes (oracle faults during the search are "
        "counted as wrong guesses), 1 when the oracle cannot be scored before the search "
        "starts, 2 for invalid options, 130 when interrupted (completed strings are printed).",
    )
    ap.add_argument(
        "--cmd",
        default=DEFAULT_CMD,
        help=f"Command to run, candidate sent via stdin (default {DEFAULT_CMD!r})",
    )
    ap.add_argument(
        "--url",
        default=None,
        help="HTTP oracle instead of --cmd; {guess} in the URL means GET, otherwise POST body",
    )
    ap.add_argument(
        "--right",
        default=DEFAULT_RIGHT,
        help="Term that makes the oracle give a right response",
    )
    ap.add_argument(
        "--wrong",
        default=DEFAULT_WRONG,
        help="Term that makes the oracle give a wrong response",
    )
    ap.add_argument(
        "--charset",
        default=DEFAULT_CHARSET,
        help=f"Charset used for guessing (default {DEFAULT_CHARSET})",
    )
    ap.add_argument("--init", default=DEFAULT_INIT, help="Initial search string")
    ap.add_argument(
        "--threads",
        type=int,
        default=DEFAULT_THREADS,
        help=f"Concurrent oracle calls (default {DEFAULT_THREADS})",
    )
    ap.add_argument(
        "--delay",
        type=int,
        default=DEFAULT_DELAY_MS,
        help="Milliseconds between oracle calls (default 0)",
    )
    ap.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help=f"Seconds per oracle call, 0 disables (default {DEFAULT_TIMEOUT:g})",
    )
    ap.add_argument(
        "--repeat",
        type=int,
        default=DEFAULT_REPEAT,
        help=f"Stability probes per marker (default {DEFAULT_REPEAT})",
    )
    ap.add_argument(
        "--retries",
        type=int,
        default=DEFAULT_RETRIES,
        help=f"Re-probes of a failed oracle call before counting it wrong (default {DEFAULT_RETRIES})",
    )
    ap.add_argument(
        "--on-unstable",
        choices=UNSTABLE_POLICIES,
        default="warn",
        help="What to do when the markers are unstable (default warn)",
    )
    ap.add_argument("-q", "--silent", action="store_true", help="Only print the final results")
    ap.add_argument("--debug", action="store_true", help="Print verbose output")
    return ap


async def main(argv: Optional[List[str]] = None, stream=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = GuessConfig.from_args(args)
    except ValueError as e:
        print(f"[!] {e}", file=stream)
        return 2
    console = Console(verbose=config.verbose, silent=config.silent, stream=stream)
    results = ResultSet()
    try:
        await guess(config, console=console, results=results)
    except GuessError as e:
        console.error(str(e))
        return 1
    except asyncio.CancelledError:
        console.clear()
        console.error("Interrupted by user.")
        if results:
            console.info(f"Completed before the interrupt ({len(results)}):")
        for r in sorted(results):
            console.println(r)
        return 130
    if config.silent:
        for r in sorted(results):
            console.println(r)
    elif not results:
        console.info("No string recovered.")
    return 0


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        # main() was cancelled on the way out and already reported
        sys.exit(130)


if __name__ == "__main__":
    cli()
