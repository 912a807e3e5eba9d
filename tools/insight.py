#!/usr/bin/env python3
"""Run one insight request through a configured orchestrator.

Usage:
    python -m tools.insight overview_pulse --context snapshot.json
    python -m tools.insight futures_risk --context snapshot.json --stream --provider mock
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from ai.orchestrator import create_orchestrator
from ai.schemas import InsightRequest, InsightResponse
from ai.settings import configure_logging, load_settings
from core.exceptions import ConfigError, InsightError
from core.risk_engine import enrich_context


def _load_context(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    if path == "-":
        data = json.load(sys.stdin)
    else:
        with Path(path).open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError("context must be a JSON object")
    return data


async def _run(orchestrator, request: InsightRequest, stream: bool) -> InsightResponse:
    if not stream:
        return await orchestrator.run(request)
    final: Optional[InsightResponse] = None
    async for event in orchestrator.stream(request):
        if event.kind == "delta":
            sys.stderr.write(event.text)
            sys.stderr.flush()
        else:
            final = event.response
    sys.stderr.write("\n")
    if final is None:
        raise InsightError("stream ended without a final event")
    return final


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Request one AI insight")
    parser.add_argument("feature", help="Feature id (e.g. overview_pulse)")
    parser.add_argument("--context", help="JSON file with the request context ('-' for stdin)")
    parser.add_argument("--config", default=None, help="App config file (default: config/app.yaml)")
    parser.add_argument("--provider", choices=("openai", "anthropic", "mock"), help="Override the configured provider")
    parser.add_argument("--stream", action="store_true", help="Stream deltas to stderr")
    parser.add_argument("--no-risk", action="store_true", help="Skip risk engine enrichment of the context")
    parser.add_argument("--log-level", default=None, help="Override logging.level")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1
    configure_logging(settings, args.log_level)

    if args.provider:
        settings = settings.model_copy(
            update={"ai": settings.ai.model_copy(update={"provider": args.provider, "model": None})}
        )

    try:
        context = _load_context(args.context)
    except (OSError, ValueError) as e:
        print(f"Could not read context: {e}", file=sys.stderr)
        return 1
    if not args.no_risk:
        context = enrich_context(context, thresholds=settings.risk_thresholds())

    try:
        orchestrator = create_orchestrator(settings)
        response = asyncio.run(_run(orchestrator, InsightRequest(feature=args.feature, context=context), args.stream))
    except (InsightError, ValueError) as e:
        print(f"Insight request failed: {e}", file=sys.stderr)
        return 2

    print(json.dumps(response.describe(), indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
