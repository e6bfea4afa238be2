# src/scan/checker_factory.py — v1
"""Build checkers from declarative specs.

Each spec in ``Settings.checkers`` is one of::

    {"name": "tfsec", "command": ["tfsec", "--format", "json", "."], "fail_on": "medium"}
    {"name": "no-public-buckets", "patterns": {"acl\\s*=\\s*\"public-read\"": "public-read bucket"}}
    {"name": "custom", "class_path": "mypkg.checks.CustomChecker", "options": {...}}

Registration order is the order of the list.
"""

from __future__ import annotations

import importlib
import logging
from typing import Any

from deploygate.config.settings import Settings
from deploygate.core.models import Severity
from deploygate.scan.base_checker import BaseChecker
from deploygate.scan.command_checker import CommandChecker
from deploygate.scan.pattern_checker import ForbiddenPatternChecker

logger = logging.getLogger(__name__)


class CheckerError(Exception):
    """Raised when a checker spec cannot be turned into a checker."""


def create_checkers(settings: Settings) -> list[BaseChecker]:
    """Instantiate all configured checkers in registration order."""
    checkers = [
        build_checker(spec, settings.checker_timeout_s, tuple(settings.stage_env_passthrough_list))
        for spec in settings.checkers
    ]
    logger.info("Configured %d checkers: %s", len(checkers), [c.name for c in checkers])
    return checkers


def build_checker(
    spec: dict[str, Any],
    default_timeout_s: float | None = None,
    env_passthrough: tuple[str, ...] = ("PATH", "HOME"),
) -> BaseChecker:
    """Build one checker from its spec.

    Raises:
        CheckerError: If the spec is malformed or its class cannot be loaded.
    """
    name = spec.get("name")
    if not name:
        raise CheckerError(f"Checker spec without a name: {spec!r}")
    timeout_s = spec.get("timeout_s", default_timeout_s)

    if "command" in spec:
        return CommandChecker(
            name=name,
            command=list(spec["command"]),
            timeout_s=timeout_s,
            fail_on=Severity.parse(spec.get("fail_on", "low")),
            env_passthrough=env_passthrough,
        )

    if "patterns" in spec:
        return ForbiddenPatternChecker(
            name=name,
            patterns=dict(spec["patterns"]),
            include=spec.get("include"),
            severity=Severity.parse(spec.get("severity", "high")),
            timeout_s=timeout_s,
        )

    if "class_path" in spec:
        return _import_checker(spec["class_path"], name, spec.get("options", {}))

    raise CheckerError(f"Checker '{name}' needs one of: command, patterns, class_path")


def _import_checker(class_path: str, name: str, options: dict[str, Any]) -> BaseChecker:
    """Import and instantiate a checker from a dotted class path.

    The class is called with ``name=...`` plus ``options`` as keyword args.
    """
    module_path, _, class_name = class_path.rpartition(".")
    if not module_path:
        raise CheckerError(f"Invalid class path: {class_path}")

    try:
        module = importlib.import_module(module_path)
    except ImportError as exc:
        raise CheckerError(f"Cannot import module {module_path}: {exc}") from exc

    cls = getattr(module, class_name, None)
    if cls is None:
        raise CheckerError(f"Class {class_name} not found in {module_path}")

    if not isinstance(cls, type) or not issubclass(cls, BaseChecker):
        raise CheckerError(f"{class_path} is not a BaseChecker subclass")

    return cls(name=name, **options)
