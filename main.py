#!/usr/bin/env python3
"""
caregate - command line front end for the client security layer.

Screens text with the input validator and drives the persisted rate
limiter, so limits carry over between invocations.
"""

import argparse
import json
import sys
from typing import List, Optional

from loguru import logger

from config.settings import settings
from security.input_validator import InputValidator, ValidationRule
from security.rate_limiter import PRESETS, RateLimiter, get_preset
from security.storage import FileKeyValueStore


def setup_logging(level: Optional[str] = None):
    """Configure console and rotating file logging."""
    # Remove default handler
    logger.remove()
    logger.configure(extra={"component": "caregate"})

    level = (level or settings.log_level).upper()

    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[component]}</cyan> - <level>{message}</level>"
    )

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / "caregate.log"
    logger.add(
        log_file,
        rotation="10 MB",
        retention="30 days",
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[component]} | {name}:{function}:{line} - {message} | {extra}"
    )

    logger.debug(f"Logging configured. Log file: {log_file}")


def build_rules(args: argparse.Namespace) -> List[ValidationRule]:
    """Translate validate flags into rules, in a fixed order."""
    rules = []
    if args.required:
        rules.append(ValidationRule.required())
    if args.email:
        rules.append(ValidationRule.email())
    if args.min_length is not None:
        rules.append(ValidationRule.min_length(args.min_length))
    if args.max_length is not None:
        rules.append(ValidationRule.max_length(args.max_length))
    if args.pattern:
        rules.append(ValidationRule.pattern(args.pattern))
    if args.medical:
        rules.append(ValidationRule.medical(args.medical))
    return rules


def cmd_validate(args: argparse.Namespace) -> int:
    result = InputValidator().validate(args.text, build_rules(args), args.context)
    print(json.dumps({
        "is_valid": result.is_valid,
        "errors": result.errors,
        "warnings": result.warnings,
        "sanitized_value": result.sanitized_value,
    }, indent=2))
    return 0 if result.is_valid else 1


def cmd_check(args: argparse.Namespace, limiter: RateLimiter) -> int:
    status = limiter.check_limit(get_preset(args.preset))
    output = status.to_dict()
    if not status.allowed:
        output["message"] = limiter.format_limit_message(status)
    print(json.dumps(output, indent=2))
    return 0 if status.allowed else 2


def cmd_status(args: argparse.Namespace, limiter: RateLimiter) -> int:
    print(json.dumps(limiter.get_status(get_preset(args.preset)).to_dict(), indent=2))
    return 0


def cmd_reset(args: argparse.Namespace, limiter: RateLimiter) -> int:
    limiter.reset_limit(get_preset(args.preset).identifier)
    return 0


def cmd_clear(args: argparse.Namespace, limiter: RateLimiter) -> int:
    limiter.clear_all()
    return 0


def cmd_presets(args: argparse.Namespace) -> int:
    print(json.dumps({
        name: {
            "identifier": config.identifier,
            "max_requests": config.max_requests,
            "window_ms": config.window_ms,
        }
        for name, config in PRESETS.items()
    }, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="caregate", description="Client security layer utilities")
    parser.add_argument("--log-level", help="Override the configured log level")
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="Screen and validate a value")
    validate.add_argument("text")
    validate.add_argument("--required", action="store_true")
    validate.add_argument("--email", action="store_true")
    validate.add_argument("--min-length", type=int)
    validate.add_argument("--max-length", type=int)
    validate.add_argument("--pattern")
    validate.add_argument("--medical", choices=["icd10", "cpt", "npi", "dea", "medical_license"])
    validate.add_argument("--context", default="cli")

    for name, help_text in (
        ("check", "Record an attempt against a preset limit"),
        ("status", "Show a preset limit without recording"),
        ("reset", "Forget attempts for a preset limit"),
    ):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("preset", choices=sorted(PRESETS))

    sub.add_parser("clear", help="Drop all persisted rate limit data")
    sub.add_parser("presets", help="List preset limits")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "validate":
        return cmd_validate(args)
    if args.command == "presets":
        return cmd_presets(args)

    limiter = RateLimiter(store=FileKeyValueStore(settings.storage_dir))
    limiter.initialize()

    handlers = {
        "check": cmd_check,
        "status": cmd_status,
        "reset": cmd_reset,
        "clear": cmd_clear,
    }
    return handlers[args.command](args, limiter)


if __name__ == "__main__":
    sys.exit(main())
