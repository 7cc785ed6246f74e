"""Operator commands for the games backend.

Usage:
    velora-games reap --interval 5m
    velora-games reap --once
    velora-games regenerate-analysis --session-id <id>
    velora-games migrate
"""

from __future__ import annotations

import argparse
import asyncio
import json
import re
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from app.domain.games.policy import GameError
from app.domain.games.service import GamesService
from app.domain.games.worker import get_worker
from app.infra import postgres
from app.maintenance.reaper import GameReaper
from app.obs import logging as obs_logging

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"

_DURATION = re.compile(r"^\s*(\d+)\s*([smh]?)\s*$")
_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: str) -> int:
	"""Parse ``30s``, ``5m``, ``1h`` or a bare number of seconds."""
	match = _DURATION.match(value or "")
	if not match:
		raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
	seconds = int(match.group(1)) * _UNITS[match.group(2)]
	if seconds <= 0:
		raise argparse.ArgumentTypeError("duration must be positive")
	return seconds


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(prog="velora-games", description="Velora games maintenance")
	sub = parser.add_subparsers(dest="command", required=True)

	reap = sub.add_parser("reap", help="Expire stale games and purge old ones")
	reap.add_argument("--interval", type=parse_duration, default=parse_duration("5m"), help="Delay between runs (e.g. 30s, 5m)")
	reap.add_argument("--once", action="store_true", help="Run a single pass and exit")

	regen = sub.add_parser("regenerate-analysis", help="Recompute results for a finished scenario game")
	regen.add_argument("--session-id", required=True)

	sub.add_parser("migrate", help="Apply SQL migrations in order")
	return parser


async def _reap(interval: int, once: bool) -> int:
	reaper = GameReaper()
	while True:
		stats = await reaper.run_once()
		await get_worker().drain()
		print(json.dumps(stats.as_dict()))
		if once:
			return 0
		await asyncio.sleep(interval)


async def _regenerate(session_id: str) -> int:
	try:
		results = await GamesService().regenerate_analysis(session_id)
	except GameError as exc:
		print(json.dumps(exc.to_payload()), file=sys.stderr)
		return 1
	await get_worker().drain()
	print(results.model_dump_json())
	return 0


def migration_files(directory: Path = MIGRATIONS_DIR) -> List[Path]:
	return sorted(directory.glob("*.sql"))


async def _migrate() -> int:
	pool = await postgres.get_pool()
	async with pool.acquire() as conn:
		for path in migration_files():
			async with conn.transaction():
				await conn.execute(path.read_text(encoding="utf-8"))
			print(f"applied {path.name}")
	return 0


async def run_command(args: argparse.Namespace) -> int:
	await postgres.init_pool()
	try:
		if args.command == "reap":
			return await _reap(args.interval, args.once)
		if args.command == "regenerate-analysis":
			return await _regenerate(args.session_id)
		return await _migrate()
	finally:
		await postgres.close_pool()


def main(argv: Optional[Sequence[str]] = None) -> int:
	args = build_parser().parse_args(argv)
	obs_logging.configure_logging()
	try:
		return asyncio.run(run_command(args))
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	sys.exit(main())
