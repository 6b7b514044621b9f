import argparse
import asyncio
import json
import sys
from dataclasses import asdict

from .config import Settings
from .errors import DeploymentError, RollbackFailed
from .logger import LEVELS, get_logger, setup_logging
from .orchestrator import DeploymentOrchestrator
from .runner import CommandRunner
from .verify import DeploymentVerifier

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ROLLBACK_FAILED = 2  # Manual intervention required


def exit_code_for(result):
    if result.success:
        return EXIT_OK
    if result.rollback_error:
        return EXIT_ROLLBACK_FAILED
    return EXIT_FAILED


def build_parser():
    parser = argparse.ArgumentParser(prog="portfolio-deploy", description="Zero-downtime portfolio deployment")
    parser.add_argument("--log-level", type=str.upper, choices=LEVELS)
    parser.add_argument("--env-file", help="key=value file read before the environment")

    actions = parser.add_mutually_exclusive_group()
    actions.add_argument("--rollback", action="store_true", help="restore the last backup")
    actions.add_argument("--status", action="store_true", help="show the process table")
    actions.add_argument("--logs", action="store_true", help="show recent application logs")
    actions.add_argument("--health-check", action="store_true", help="probe the health endpoint")
    actions.add_argument("--verify", action="store_true", help="verify the installed deployment")
    actions.add_argument("--write-env", metavar="PATH", help="write the service environment file")

    parser.add_argument("--backup", metavar="NAME", help="backup to restore with --rollback")
    parser.add_argument("--lines", type=int, default=100)
    parser.add_argument("--attempts", type=int, default=5)
    return parser


async def run(args, settings, orchestrator):
    logger = get_logger("cli")

    if args.status:
        print(json.dumps(await orchestrator.status(), indent=2))
        return EXIT_OK

    if args.logs:
        print(await orchestrator.logs(args.lines))
        return EXIT_OK

    if args.health_check:
        try:
            await orchestrator.health_check(args.attempts)
        except DeploymentError as e:
            logger.error(str(e))
            return EXIT_FAILED
        return EXIT_OK

    if args.verify:
        verifier = DeploymentVerifier(settings, orchestrator.runner, orchestrator.supervisor,
                                      orchestrator.edge, orchestrator.probe)
        report = await verifier.run()
        return EXIT_OK if report.ok else EXIT_FAILED

    if args.rollback:
        try:
            await orchestrator.rollback(args.backup)
        except RollbackFailed as e:
            logger.critical(f"{e}. Manual intervention required.")
            return EXIT_ROLLBACK_FAILED
        except DeploymentError as e:
            logger.error(str(e))
            return EXIT_FAILED
        return EXIT_OK

    try:
        result = await orchestrator.deploy()
    except DeploymentError as e:
        logger.error(str(e))
        return EXIT_FAILED
    print(json.dumps(asdict(result), indent=2))
    return exit_code_for(result)


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.from_env(env_file=args.env_file)
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(EXIT_FAILED)

    if args.write_env:
        setup_logging(args.log_level or settings.log_level)
        settings.write_env_file(args.write_env)
        sys.exit(EXIT_OK)

    setup_logging(args.log_level or settings.log_level, log_file=settings.log_file)
    orchestrator = DeploymentOrchestrator(settings, runner=CommandRunner())
    sys.exit(asyncio.run(run(args, settings, orchestrator)))


if __name__ == "__main__":
    main()
