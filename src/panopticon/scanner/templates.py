"""Built-in nmap scan templates and command construction."""

from __future__ import annotations

import logging
from pathlib import Path

from panopticon.scanner.models import ScanTemplate
from panopticon.schemas.scan import ScanParameters
from panopticon.utils import sanitize_cidr

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_NAME = "default"

BUILTIN_TEMPLATES: dict[str, ScanTemplate] = {
    "default": ScanTemplate(
        name="default",
        description="Standard network scan",
        nmap_args=("-sS", "-sV", "-O", "--osscan-limit"),
        rate_limit=1000,
    ),
    "quick": ScanTemplate(
        name="quick",
        description="Fast scan of common ports",
        nmap_args=("-sS", "-F"),
        rate_limit=2000,
    ),
    "thorough": ScanTemplate(
        name="thorough",
        description="Detailed scan of all ports",
        nmap_args=("-sS", "-sV", "-p-", "-O", "--osscan-guess"),
        rate_limit=500,
    ),
    "stealth": ScanTemplate(
        name="stealth",
        description="Low-impact scan for sensitive networks",
        nmap_args=("-sS", "-T2", "--max-retries", "1"),
        rate_limit=100,
    ),
}


def resolve_template(name: str | None) -> ScanTemplate:
    """Return the named template, falling back to the default one."""
    if name and name in BUILTIN_TEMPLATES:
        return BUILTIN_TEMPLATES[name]
    if name:
        logger.warning("Unknown scan template %r, using %s", name, DEFAULT_TEMPLATE_NAME)
    return BUILTIN_TEMPLATES[DEFAULT_TEMPLATE_NAME]


def apply_overrides(args: list[str], parameters: ScanParameters | None) -> list[str]:
    """Apply the port and host-discovery overrides to template arguments."""
    if parameters is None:
        return list(args)

    result = list(args)
    if parameters.scan_all_ports:
        result = [arg for arg in result if not arg.startswith("-p")]
        result.append("-p-")
    if parameters.disable_ping and "-Pn" not in result:
        result.append("-Pn")
    return result


def build_scan_command(
    nmap_path: str,
    template: ScanTemplate,
    output_path: Path,
    target_network: str,
    default_rate_limit: int,
    parameters: ScanParameters | None = None,
) -> list[str]:
    """
    Build the nmap command line for a scan.

    Shape: ``nmap -oX <output> <template args...> --max-rate <n> <target>``.
    The rate limit comes from the overrides, then the template, then the
    configured default.

    Raises:
        ValueError: If the target network is empty or malformed
    """
    target = target_network
    rate_limit = template.rate_limit or default_rate_limit
    if parameters is not None:
        if parameters.target_network:
            target = parameters.target_network
        if parameters.rate_limit:
            rate_limit = parameters.rate_limit

    target = sanitize_cidr(target)

    return [
        nmap_path,
        "-oX",
        str(output_path),
        *apply_overrides(list(template.nmap_args), parameters),
        "--max-rate",
        str(rate_limit),
        target,
    ]
