"""Command-line interface for the call audit engine.

WHY: Operators and developers need to run an audit over a case, or rerun
one step / control point of a stored audit, without standing up the job
infrastructure. The CLI wires JSON inputs to the pipeline and the rerun
coordinator and prints JSON results.

HOW: argparse with two subcommands:
  audit CASE_JSON                 — full audit of a case file
  rerun STORE_JSON --audit-id ... — rerun against a JSON-backed store
Runs the async code via asyncio.run(). Analysis goes through
OpenAIAnalysisClient (API key from .env).

RULES:
- JSON results go to stdout; status messages and logs go to stderr
- --verbose switches logging to DEBUG
- Exit code 1 on any handled error (not found, invalid request, config,
  analysis failure); 130 on Ctrl-C
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from call_audit.analysis.client import AnalysisClientError, OpenAIAnalysisClient
from call_audit.analysis.orchestrator import (
    AnalysisOptions,
    StepAnalysisError,
    StepAnalysisOrchestrator,
)
from call_audit.core.ir import AuditConfig
from call_audit.events import LoggingProgressSink
from call_audit.pipeline import run_audit
from call_audit.rerun import InvalidRerunRequest, NotFoundError, RerunCoordinator
from call_audit.store import (
    InMemoryAuditRepository,
    StaticProductContextProvider,
    StoredRecording,
    recordings_to_transcripts,
)


def _status(msg: str) -> None:
    """Print a status message to stderr (stdout is reserved for JSON)."""
    print(msg, file=sys.stderr, flush=True)


def _emit_json(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def _load_json(path_str: str) -> Dict[str, Any]:
    path = Path(path_str).resolve()
    if not path.is_file():
        raise ValueError("File not found: {}".format(path))
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("{} must contain a JSON object".format(path.name))
    return data


def _options_from_args(args: argparse.Namespace) -> AnalysisOptions:
    options = AnalysisOptions()
    if args.concurrency is not None:
        options.concurrency = args.concurrency
    if args.max_retries is not None:
        options.max_retries = args.max_retries
    return options


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _run_audit_command(args: argparse.Namespace) -> None:
    """Run a full audit from a case file holding "config", "recordings" and optional "products"."""
    case = _load_json(args.case_file)
    if "config" not in case:
        raise ValueError("Case file must have a 'config' object")

    config = AuditConfig.from_dict(case["config"])
    recordings = [StoredRecording.from_dict(r) for r in case.get("recordings", [])]
    transcripts = recordings_to_transcripts(recordings)
    provider = StaticProductContextProvider.from_list(case.get("products"))

    _status("Auditing {} recording(s) against '{}' ({} step(s))...".format(
        len(transcripts), config.name or config.id, len(config.steps)
    ))

    async with OpenAIAnalysisClient() as client:
        orchestrator = StepAnalysisOrchestrator(
            client, options=_options_from_args(args), product_provider=provider
        )
        result = await run_audit(
            config,
            transcripts,
            orchestrator,
            sink=LoggingProgressSink(),
            evidence_gating=False if args.no_evidence_gating else None,
        )

    _status("Done: {:.2f}% {} (critical {}), {} failed step(s)".format(
        result.compliance.score,
        result.compliance.niveau.value,
        result.compliance.points_critiques,
        result.run.failed,
    ))
    _emit_json(result.to_dict())


async def _run_rerun_command(args: argparse.Namespace) -> None:
    """Rerun one step, or one or more control points, of a stored audit."""
    store = _load_json(args.store_file)
    repository = InMemoryAuditRepository.from_dict(store)
    provider = StaticProductContextProvider.from_list(store.get("products"))

    async with OpenAIAnalysisClient() as client:
        orchestrator = StepAnalysisOrchestrator(
            client, options=_options_from_args(args), product_provider=provider
        )
        coordinator = RerunCoordinator(
            repository,
            orchestrator,
            evidence_gating=False if args.no_evidence_gating else None,
        )

        points: List[int] = args.control_point or []
        if not points:
            _status("Rerunning audit {} step {}...".format(args.audit_id, args.step))
            step_result = await coordinator.rerun_step(args.audit_id, args.step, args.instructions)
            _emit_json(step_result.to_dict())
        elif len(points) == 1:
            _status("Rerunning audit {} step {} control point {}...".format(
                args.audit_id, args.step, points[0]
            ))
            point_result = await coordinator.rerun_control_point(
                args.audit_id, args.step, points[0], args.instructions
            )
            _emit_json(point_result.to_dict())
        else:
            _status("Rerunning audit {} step {} control points {}...".format(
                args.audit_id, args.step, ", ".join(str(p) for p in points)
            ))
            outcomes = await coordinator.rerun_control_points(
                args.audit_id, args.step, points, args.instructions
            )
            _emit_json([o.to_dict() for o in outcomes])


async def _dispatch(args: argparse.Namespace) -> None:
    if args.command == "audit":
        await _run_audit_command(args)
    else:
        await _run_rerun_command(args)


# ---------------------------------------------------------------------------
# Parser / entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the CLI.

    RULES:
    - Subcommands: audit, rerun (one is required)
    - --control-point may be repeated; more than one runs a batch rerun
    """
    parser = argparse.ArgumentParser(
        prog="call_audit",
        description="Audit recorded sales calls for compliance and rerun "
                    "individual steps or control points.",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Maximum parallel step analyses (default: AUDIT_STEP_CONCURRENCY).",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=None,
        help="Analysis attempts per step (default: ANALYSIS_MAX_RETRIES).",
    )
    parser.add_argument(
        "--no-evidence-gating",
        action="store_true",
        help="Skip citation checks against the transcript.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    audit = subparsers.add_parser("audit", help="Run a full audit over a case file.")
    audit.add_argument(
        "case_file",
        help="JSON file with 'config', 'recordings' and optional 'products'.",
    )

    rerun = subparsers.add_parser("rerun", help="Rerun a step or control point of a stored audit.")
    rerun.add_argument(
        "store_file",
        help="JSON file with 'configs', 'audits', 'recordings' and optional 'products'.",
    )
    rerun.add_argument("--audit-id", required=True, help="Stored audit id.")
    rerun.add_argument("--step", type=int, required=True, help="Step position (1-based).")
    rerun.add_argument(
        "--control-point",
        type=int,
        action="append",
        default=None,
        help="Control point index (1-based). Can be specified multiple times.",
    )
    rerun.add_argument(
        "--instructions",
        default=None,
        help="Operator guidance appended to the step prompt.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for ``python -m call_audit``.

    RULES:
    - argv=None means use sys.argv (normal CLI invocation)
    - Explicit argv is for testing
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        asyncio.run(_dispatch(args))
    except KeyboardInterrupt:
        _status("\nCancelled by user.")
        sys.exit(130)
    except (NotFoundError, InvalidRerunRequest) as e:
        print("Error: {}".format(e), file=sys.stderr)
        sys.exit(1)
    except (StepAnalysisError, AnalysisClientError) as e:
        print("Error: analysis failed: {}".format(e), file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        # Config and input errors (missing API key, bad JSON shape, etc.)
        print("Error: {}".format(e), file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        logging.getLogger(__name__).exception("Unexpected error")
        print("Error: {}".format(e), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
