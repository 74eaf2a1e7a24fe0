import re
from collections.abc import Sequence

DOMAIN_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9\-_.]*\.[a-zA-Z]{2,}$")
EXCLUDE_PREFIX = "-"


def validate_domain_filter(domains: Sequence[str]) -> list[str]:
    """Drop entries that do not look like hostnames. A leading `-` marks an exclusion and is kept."""
    return [domain for domain in domains if DOMAIN_PATTERN.match(domain.removeprefix(EXCLUDE_PREFIX))]


def split_domain_filter(domains: Sequence[str]) -> tuple[list[str], list[str]]:
    """Split a validated domain filter into included and excluded domains."""

    validated = validate_domain_filter(domains)

    includes = [domain for domain in validated if not domain.startswith(EXCLUDE_PREFIX)]
    excludes = [domain.removeprefix(EXCLUDE_PREFIX) for domain in validated if domain.startswith(EXCLUDE_PREFIX)]

    return includes, excludes


def apply_domain_filter_hints(query: str, domains: Sequence[str]) -> str:
    """Express a domain filter as plain-language instructions for transports without a native filter."""

    includes, excludes = split_domain_filter(domains)

    if includes:
        query += f"\n\nOnly use sources from: {', '.join(includes)}"

    if excludes:
        query += f"\nDo not use sources from: {', '.join(excludes)}"

    return query
