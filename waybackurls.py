#!/usr/bin/env python3
"""
waybackurls.py

• Every URL the Wayback Machine and Common Crawl ever archived for a domain
• Backends fetched concurrently per domain, domains strictly in input order
• Retries with exponential backoff, fallback line when a backend is down
• Exact-string dedup per domain, optional RFC 3339 dates
"""

import argparse
import asyncio
import json
import random
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

import aiohttp
from tqdm import tqdm

# ================= CONFIG =================

WAYBACK_CDX_URL = (
    "http://web.archive.org/cdx/search/cdx"
    "?url=*.{domain}/*&output=json&collapse=urlkey"
)
COMMONCRAWL_INDEX_URL = (
    "http://index.commoncrawl.org/{index}-index"
    "?url=*.{domain}/*&output=json"
)
COMMONCRAWL_INDEX = "CC-MAIN-2024-33"

TIMEOUT = 300
MAX_RETRIES = 10
BACKOFF_BASE = 1.7

CDX_TIME_FORMAT = "%Y%m%d%H%M%S"
RFC3339_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
ZERO_TIME = "0001-01-01T00:00:00Z"
NO_DATE = "NA"


@dataclass(frozen=True)
class Config:
    dates: bool = False
    backends: Tuple[str, ...] = ("wayback", "commoncrawl")
    cc_index: str = COMMONCRAWL_INDEX
    timeout: float = TIMEOUT
    max_retries: int = MAX_RETRIES
    backoff_base: float = BACKOFF_BASE
    verbose: bool = False
    quiet: bool = False


# ================= ERRORS =================

class WaybackURLsError(Exception):
    pass


class ConfigError(WaybackURLsError):
    pass


class FetchError(WaybackURLsError):
    """A backend could not produce any records for a domain."""


class TransportError(FetchError):
    def __init__(self, context, last_error, attempts):
        self.context = context
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(
            f"{context}: giving up after {len(attempts)} attempts ({last_error!r})"
        )


# ================= HELPERS =================

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64)",
    "Mozilla/5.0 (X11; Linux x86_64)",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7)",
]


def headers():
    return {"User-Agent": random.choice(USER_AGENTS)}


def log(msg):
    tqdm.write(msg, file=sys.stderr)


@dataclass(frozen=True)
class Record:
    timestamp: Optional[str]
    url: str


def fallback_url(domain):
    return f"http://{domain}"


def fallback_record(domain):
    # not an archived URL, only a placeholder for the domain itself
    return Record(NO_DATE, fallback_url(domain))


def is_transient(status):
    return status == 429 or status >= 500


# ================= NETWORK =================

async def fetch(session, url, cfg: Config, context=""):
    """
    GET ``url`` with bounded retries and exponential backoff.

    Connection errors, timeouts, 429 and 5xx are retried. Any other status is
    returned straight away. Returns ``(status, text)``; raises
    ``TransportError`` when the last attempt still failed at transport level.
    """
    attempts: List[str] = []
    last_err = None
    status, text = None, None
    timeout = aiohttp.ClientTimeout(total=cfg.timeout)

    for attempt in range(1, cfg.max_retries + 1):
        try:
            async with session.get(url, headers=headers(), timeout=timeout) as r:
                status = r.status
                text = await r.text(errors="ignore")
            last_err = None
            if not is_transient(status):
                return status, text
            note = f"HTTP {status}"
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            last_err = e
            status, text = None, None
            note = f"{type(e).__name__}: {e}"

        if attempt == cfg.max_retries:
            attempts.append(f"[retry {attempt}] {context} {note}")
            break

        wait = cfg.backoff_base ** attempt
        line = f"[retry {attempt}] {context} {note} → wait {wait:.1f}s"
        attempts.append(line)
        if cfg.verbose:
            log(line)
        await asyncio.sleep(wait)

    # only reached once every attempt is spent
    log("\n".join(attempts))
    if last_err is not None:
        raise TransportError(context, last_err, attempts)

    return status, text


# ================= BACKENDS =================

def _salvage_rows(text):
    # the CDX server writes one row per line: [["urlkey",...],\n["com,x)/",...],\n...]
    for line in text.splitlines():
        line = line.strip().rstrip(",")
        if line.startswith("[["):
            line = line[1:]
        if line.endswith("]]"):
            line = line[:-1]
        if not line:
            continue
        try:
            row = json.loads(line)
        except ValueError:
            return
        if isinstance(row, list):
            yield row


def parse_wayback(text, context="wayback"):
    try:
        rows = json.loads(text)
    except ValueError as e:
        rows = list(_salvage_rows(text))
        log(f"{context}: malformed CDX response ({e}), kept {max(len(rows) - 1, 0)} rows")

    if not isinstance(rows, list):
        return []

    records = []
    # first row is the header: ["urlkey", "timestamp", "original", ...]
    for row in rows[1:]:
        if not isinstance(row, list) or len(row) < 3:
            continue
        records.append(Record(str(row[1]), str(row[2])))
    return records


def parse_commoncrawl(text):
    records = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except ValueError:
            continue
        if not isinstance(obj, dict):
            continue
        url, ts = obj.get("url"), obj.get("timestamp")
        if not url or not isinstance(url, str):
            continue
        if ts is not None and not isinstance(ts, str):
            continue
        records.append(Record(ts, url))
    return records


def _soft_failure(name, domain, status):
    reason = "not archived" if status == 404 else "unexpected response"
    log(f"{name}: HTTP {status} for [{domain}] ({reason}), emitting {fallback_url(domain)}")
    return [fallback_record(domain)]


async def fetch_wayback(session, domain, cfg: Config) -> List[Record]:
    url = WAYBACK_CDX_URL.format(domain=domain)
    status, text = await fetch(session, url, cfg, f"wayback {domain}")
    if status != 200:
        return _soft_failure("wayback", domain, status)
    return parse_wayback(text, f"wayback {domain}")


async def fetch_commoncrawl(session, domain, cfg: Config) -> List[Record]:
    url = COMMONCRAWL_INDEX_URL.format(index=cfg.cc_index, domain=domain)
    status, text = await fetch(session, url, cfg, f"commoncrawl {domain}")
    if status != 200:
        return _soft_failure("commoncrawl", domain, status)
    return parse_commoncrawl(text)


BACKENDS = {
    "wayback": fetch_wayback,
    "commoncrawl": fetch_commoncrawl,
}


# ================= DEDUP & FORMAT =================

class Deduplicator:
    """Per-domain seen-set. Owned by the single consumer of a domain's queue."""

    def __init__(self):
        self.seen = set()

    def admit(self, record):
        if record.url in self.seen:
            return False
        self.seen.add(record.url)
        return True


def format_record(record, with_dates):
    if not with_dates:
        return record.url
    try:
        ts = datetime.strptime(record.timestamp, CDX_TIME_FORMAT).strftime(RFC3339_FORMAT)
    except (TypeError, ValueError):
        log(f"failed to parse date [{record.timestamp}] for URL [{record.url}]")
        ts = ZERO_TIME
    return f"{ts} {record.url}"


# ================= PIPELINE =================

_DONE = object()


async def harvest(session, domain, cfg: Config, sink):
    """
    Fetch ``domain`` from every configured backend at once and write the
    deduplicated lines to ``sink``. Returns the number of lines written.
    """
    queue = asyncio.Queue()

    async def produce(name):
        try:
            records = await BACKENDS[name](session, domain, cfg)
        except FetchError as e:
            log(f"failed to fetch URLs for [{domain}] from {name}: {e}")
            # bare line, straight to the sink
            await queue.put(fallback_url(domain))
            return
        for record in records:
            await queue.put(record)

    async def consume():
        dedup = Deduplicator()
        written = 0
        while True:
            item = await queue.get()
            if item is _DONE:
                return written
            if isinstance(item, str):
                sink.write(item + "\n")
            elif dedup.admit(item):
                sink.write(format_record(item, cfg.dates) + "\n")
            else:
                continue
            written += 1

    consumer = asyncio.ensure_future(consume())
    try:
        await asyncio.gather(*(produce(name) for name in cfg.backends))
    except BaseException:
        consumer.cancel()
        raise
    await queue.put(_DONE)
    written = await consumer
    sink.flush()
    return written


async def run(domains, cfg: Config, sink):
    written = 0
    with tqdm(domains, desc="Domains", file=sys.stderr, disable=cfg.quiet) as bar:
        async with aiohttp.ClientSession() as session:
            for domain in bar:
                try:
                    n = await harvest(session, domain, cfg, sink)
                except OSError:
                    # no destination left, fatal
                    raise
                except Exception as e:
                    log(f"failed to process [{domain}]: {type(e).__name__}: {e}")
                    continue
                written += n
                bar.set_postfix(urls=n)
    return written


# ================= CLI =================

def read_domains(lines):
    return [line.strip() for line in lines if line.strip()]


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        prog="waybackurls",
        description="Fetch every URL the Wayback Machine and Common Crawl know for a domain.",
    )
    p.add_argument("domain", nargs="?", help="target domain (default: read domains from stdin)")
    p.add_argument("-i", "--input", help="file with one domain per line")
    p.add_argument("-o", "--output", help="result file (default: stdout)")
    p.add_argument("-d", "--dates", action="store_true", help="prefix each URL with its capture date")
    p.add_argument(
        "-b", "--backend", action="append", choices=sorted(BACKENDS), dest="backends",
        help="archive to query, repeatable (default: all)",
    )
    p.add_argument("--cc-index", default=COMMONCRAWL_INDEX, help=f"Common Crawl index id (default: {COMMONCRAWL_INDEX})")
    p.add_argument("--retries", type=int, default=MAX_RETRIES, help=f"attempts per request (default: {MAX_RETRIES})")
    p.add_argument("--timeout", type=float, default=TIMEOUT, help=f"seconds per attempt (default: {TIMEOUT})")
    p.add_argument("--backoff", type=float, default=BACKOFF_BASE, help=f"backoff base in seconds (default: {BACKOFF_BASE})")
    p.add_argument("-v", "--verbose", action="store_true", help="log every retry")
    p.add_argument("-q", "--quiet", action="store_true", help="no progress bar")
    return p.parse_args(argv)


def build_config(args):
    if args.retries < 1:
        raise ConfigError("--retries must be at least 1")
    if args.timeout <= 0:
        raise ConfigError("--timeout must be positive")
    if args.backoff < 0:
        raise ConfigError("--backoff cannot be negative")

    backends = tuple(dict.fromkeys(args.backends or BACKENDS))
    return Config(
        dates=args.dates,
        backends=backends,
        cc_index=args.cc_index,
        timeout=args.timeout,
        max_retries=args.retries,
        backoff_base=args.backoff,
        verbose=args.verbose,
        quiet=args.quiet,
    )


def load_domains(args, stdin=None):
    if args.domain and args.input:
        raise ConfigError("give either a domain or --input, not both")
    if args.domain:
        domains = read_domains([args.domain])
    elif args.input:
        try:
            with open(args.input, encoding="utf-8") as f:
                domains = read_domains(f)
        except OSError as e:
            raise ConfigError(f"cannot read {args.input}: {e}") from e
    else:
        domains = read_domains(stdin if stdin is not None else sys.stdin)

    if not domains:
        raise ConfigError("no domains given")
    return domains


def main(argv=None, stdin=None):
    args = parse_args(argv)
    try:
        cfg = build_config(args)
        domains = load_domains(args, stdin)
    except ConfigError as e:
        log(f"Error: {e}")
        log("Usage: waybackurls [-o RESULT] [-d] [DOMAIN | -i FILE]")
        return 2

    try:
        if args.output:
            with open(args.output, "w", encoding="utf-8") as sink:
                written = asyncio.run(run(domains, cfg, sink))
        else:
            written = asyncio.run(run(domains, cfg, sys.stdout))
    except OSError as e:
        log(f"Error: cannot write results: {e}")
        return 1

    return 0 if written else 1


if __name__ == "__main__":
    sys.exit(main())
