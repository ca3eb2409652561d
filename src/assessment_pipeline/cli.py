"""CLI entry point for the assessment pipeline.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``assessment-pipeline = "assessment_pipeline.cli:main"``.

``--list-pipelines`` prints the registry. Otherwise a scripted candidate is
run through ``--pipeline`` against the HTTP evaluation gateway and the
resulting scorecard is printed. The script is a YAML mapping::

    rounds:
      aptitude:
        steps:
          - progress: {answers: {q1: "B", q2: "D"}}
        accept_retry: true
      technical_interview:
        steps:
          - checkpoint: {message: "I would start with a hash map."}
          - progress: {code: "def solve(): ..."}
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
import sys
from typing import Any

import yaml

from assessment_pipeline.errors import AssessmentError
from assessment_pipeline.gateway import HttpEvaluationGateway
from assessment_pipeline.models import (
    CheckpointReply,
    OrchestratorConfig,
    RoundState,
    Scorecard,
    SessionDecision,
)
from assessment_pipeline.orchestrator import (
    SessionOrchestrator,
    apply_env_overrides,
    configure_logging,
)
from assessment_pipeline.projection import format_countdown
from assessment_pipeline.registry import PipelineRegistry


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        Configured ``ArgumentParser``.
    """
    parser = argparse.ArgumentParser(
        prog="assessment-pipeline",
        description="Drive a candidate through a timed multi-round assessment.",
    )
    parser.add_argument(
        "--list-pipelines",
        action="store_true",
        help="Print the declared pipelines and their rounds, then exit.",
    )
    parser.add_argument(
        "--pipeline",
        default=None,
        help="Pipeline type or alias (product, service, analyst).",
    )
    parser.add_argument(
        "--candidate",
        default="candidate",
        help="Opaque candidate identifier.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to an optional OrchestratorConfig YAML file.",
    )
    parser.add_argument(
        "--script",
        default=None,
        help="Path to a YAML script of per-round candidate actions.",
    )
    return parser


def _load_document(path: str, role: str) -> dict[str, Any]:
    """Read the orchestrator config or the candidate script.

    Both are YAML mappings: the config holds ``OrchestratorConfig`` fields
    and the script holds the ``rounds`` table played by ``run_script``. An
    empty file reads as an empty mapping, so defaults apply.

    Args:
        path: Location of the document.
        role: ``"config"`` or ``"script"``, used in error messages.

    Raises:
        FileNotFoundError: If *path* is not a file.
        ValueError: If the document is not valid YAML or not a mapping.
    """
    source = Path(path)
    if not source.is_file():
        msg = f"{role} file not found: {path}"
        raise FileNotFoundError(msg)
    try:
        document = yaml.safe_load(source.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        msg = f"{role} file {path} is not valid YAML: {exc}"
        raise ValueError(msg) from exc
    if document is None:
        return {}
    if not isinstance(document, dict):
        msg = f"{role} file must contain a YAML mapping, got {type(document).__name__}"
        raise ValueError(msg)
    return document


def _print_pipelines(registry: PipelineRegistry) -> None:
    for pipeline_type in registry.pipeline_types():
        print(pipeline_type.value)
        for kind in registry.sequence_for(pipeline_type):
            meta = registry.metadata_for(kind)
            print(f"  {kind.value:<22} {meta.display_name} [{meta.family.value}]")


def _print_scorecard(card: Scorecard) -> None:
    sep = "=" * 60
    print(sep)
    print(f"Session {card.session_id} ({card.pipeline_type.value}): {card.state.value}")
    print(sep)
    for line in card.rounds:
        score = "-" if line.score is None else f"{line.score:.1f}"
        verdict = "-" if line.passed is None else ("passed" if line.passed else "failed")
        forced = " (time expired)" if line.forced else ""
        print(f"  {line.display_name:<28} {score:>6}  {verdict}{forced}")
    overall = "-" if card.overall_score is None else f"{card.overall_score:.1f}"
    print(f"  Completion: {card.completion_percent:.0f}%  Overall: {overall}")
    if card.did_not_advance and card.terminated_by is not None:
        print(f"  Did not advance past {card.terminated_by.value}")


async def run_script(
    orchestrator: SessionOrchestrator,
    pipeline: str,
    candidate_id: str,
    script: dict[str, Any],
) -> Scorecard:
    """Play a scripted candidate through a whole pipeline.

    Args:
        orchestrator: Orchestrator bound to a gateway.
        pipeline: Pipeline type or alias.
        candidate_id: Candidate identifier.
        script: Parsed script mapping (see module docstring).

    Returns:
        The final scorecard.
    """
    session = await orchestrator.create_session(pipeline, candidate_id)
    plays: dict[str, Any] = script.get("rounds") or {}

    while not session.is_terminal:
        machine = orchestrator.current_round
        if (
            machine is None
            or machine.kind != session.current_round_kind
            or machine.state is RoundState.NOT_STARTED
        ):
            await orchestrator.begin_current_round()
            machine = orchestrator.current_round
            assert machine is not None
        clock = format_countdown(machine.remaining_seconds())
        print(f"Round {machine.kind.value}: {clock} on the clock")

        entry: dict[str, Any] = plays.get(machine.kind.value) or {}
        for step in entry.get("steps") or []:
            if "progress" in step:
                orchestrator.record_progress(step["progress"])
            if "checkpoint" in step:
                orchestrator.record_progress(step["checkpoint"])
                reply = await orchestrator.submit_current_round(final=False)
                if isinstance(reply, CheckpointReply):
                    print(f"  <- {reply.payload}")
        await orchestrator.submit_current_round()

        if session.last_decision is SessionDecision.RETRY_AVAILABLE:
            if entry.get("accept_retry"):
                await orchestrator.retry_current_round()
            else:
                orchestrator.decline_retry()

    await orchestrator.drain()
    return orchestrator.scorecard()


async def _run(args: argparse.Namespace, config: OrchestratorConfig) -> Scorecard:
    script = _load_document(args.script, "script") if args.script else {}
    async with HttpEvaluationGateway(config.gateway) as gateway:
        orchestrator = SessionOrchestrator(gateway, config=config)
        return await run_script(orchestrator, args.pipeline, args.candidate, script)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the assessment-pipeline CLI.

    Args:
        argv: Argument list; ``sys.argv[1:]`` when omitted.

    Returns:
        Exit code: 0 on success, 1 on error.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        if args.list_pipelines:
            _print_pipelines(PipelineRegistry())
            return 0
        if not args.pipeline:
            parser.error("--pipeline is required unless --list-pipelines is given")

        config_data = _load_document(args.config, "config") if args.config else {}
        config = apply_env_overrides(OrchestratorConfig(**config_data))
        configure_logging(config)

        card = asyncio.run(_run(args, config))
        _print_scorecard(card)

    except AssessmentError as exc:
        print(f"Assessment error: {exc}", file=sys.stderr)
        print(f"Diagnostics: {exc.diagnostics}", file=sys.stderr)
        return 1
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
