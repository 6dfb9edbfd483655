from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Sequence

from route_engine.resolver import RouteResolver
from route_engine.route_cache import RouteCacheStore
from route_engine.settings import settings
from route_engine.transport import TransportChain


def parse_point(text: str) -> dict[str, float]:
    """Parse a 'lat,lng' argument. Range checks happen in the resolver."""
    parts = [p.strip() for p in str(text).split(",")]
    if len(parts) != 2:
        raise argparse.ArgumentTypeError(f"expected 'lat,lng', got {text!r}")
    try:
        return {"lat": float(parts[0]), "lng": float(parts[1])}
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected numeric 'lat,lng', got {text!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Resolve one origin/destination pair through the offline-first route engine."
    )
    parser.add_argument("--origin", type=parse_point, required=True, help="lat,lng")
    parser.add_argument("--destination", type=parse_point, required=True, help="lat,lng")
    parser.add_argument("--cache-path", default=None)
    parser.add_argument("--relay-url", default=None)
    parser.add_argument("--profile", default=None)
    parser.add_argument("--offline", action="store_true", help="Pretend there is no connectivity.")
    parser.add_argument("--retry", action="store_true", help="Follow up with one manual retry.")
    return parser


async def run_resolution(
    resolver: RouteResolver,
    origin: dict[str, float],
    destination: dict[str, float],
    *,
    retry: bool = False,
) -> dict[str, Any]:
    try:
        await resolver.resolve(origin, destination)
        if retry:
            await resolver.retry(origin, destination)
    finally:
        await resolver.aclose()
    return resolver.state.model_dump(mode="json")


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    cache = RouteCacheStore(
        args.cache_path or settings.resolved_cache_path(),
        ttl_s=settings.route_cache_ttl_s,
    )
    transport = TransportChain(relay_base_url=args.relay_url, profile=args.profile)
    resolver = RouteResolver(cache=cache, transport=transport, online=lambda: not args.offline)

    state = asyncio.run(run_resolution(resolver, args.origin, args.destination, retry=args.retry))
    print(json.dumps(state, indent=2))
    return 0 if state["current_route"] is not None else 1


if __name__ == "__main__":
    raise SystemExit(main())
