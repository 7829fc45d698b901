"""
BuildGraph Controller - Main entry point.

    python -m controller.src.main worker
    python -m controller.src.main run cloudbuild.yaml -s _VERSION=1.2 --source .
"""

import argparse
import logging
import sys
import uuid

from controller.src.config import get_settings
from controller.src.models.step import BuildInfo
from controller.src.pipeline import (
    ValidationError,
    load_pipeline_file,
    run_pipeline,
    render_report,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

EXIT_INVALID = 3

def parse_substitution(value: str):
    if "=" not in value:
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got '{value}'")
    key, _, val = value.partition("=")
    return key, val

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="buildgraph")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("worker", help="Consume build runs from the Redis queue")

    run = sub.add_parser("run", help="Run a build file locally")
    run.add_argument("file", help="Path to the build file")
    run.add_argument("-s", "--substitution", action="append", type=parse_substitution, default=[],
                     help="User substitution, e.g. -s _VERSION=1.2")
    run.add_argument("--project", default=None)
    run.add_argument("--branch", default="")
    run.add_argument("--tag", default="")
    run.add_argument("--commit", default="")
    run.add_argument("--repo", default="")
    run.add_argument("--runtime", choices=["docker", "kubernetes"], default=None)
    run.add_argument("--source", default=None, help="Directory used as the initial workspace")
    return parser

def start_worker(settings) -> int:
    from controller.src.worker import run_worker

    logger.info("Starting BuildGraph Controller")
    logger.info(f"Runtime: {settings.runtime}")
    logger.info(f"Redis URL: {settings.redis_url}")

    if settings.runtime == "kubernetes":
        from controller.src.k8s.client import init_k8s_client, ensure_namespace

        logger.info(f"Kubernetes namespace: {settings.k8s_namespace}")
        if not init_k8s_client():
            logger.error("Failed to initialize Kubernetes client")
            return 1
        try:
            ensure_namespace()
        except Exception as e:
            logger.error(f"Failed to ensure namespace: {e}")
            return 1

    logger.info("Starting worker...")
    run_worker()
    return 0

def run_local(args, settings) -> int:
    from controller.src.services.executor import build_runtime, build_volume_backend

    try:
        dag = load_pipeline_file(args.file)
    except (OSError, ValidationError) as e:
        logger.error(f"Invalid build file {args.file}: {e}")
        return EXIT_INVALID

    build = BuildInfo(
        build_id=str(uuid.uuid4()),
        project_id=args.project or settings.default_project_id,
        branch_name=args.branch,
        tag_name=args.tag,
        commit_sha=args.commit,
        repo_name=args.repo,
    )
    runtime = build_runtime(args.runtime)

    try:
        report = run_pipeline(
            dag,
            runtime,
            build=build,
            substitutions=dict(args.substitution),
            volume_backend=build_volume_backend(runtime, build.build_id, args.source),
        )
    except ValidationError as e:
        logger.error(f"Invalid substitutions: {e}")
        return EXIT_INVALID

    print(render_report(report))
    return report.exit_code

def main(argv=None) -> int:
    """Main entry point."""
    settings = get_settings()
    args = build_parser().parse_args(argv)

    if args.command == "run":
        return run_local(args, settings)
    return start_worker(settings)

if __name__ == "__main__":
    sys.exit(main())
