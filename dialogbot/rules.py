"""
Loading and validation of the rules document.

Every check here runs once at startup. A catalog that passes validation
cannot produce an inconsistent session mid-conversation.
"""

import json
import logging
from pathlib import Path

from .errors import RuleValidationError
from .models import END, RuleCatalog

logger = logging.getLogger(__name__)


def parse_rules(document: dict) -> RuleCatalog:
    """Build and validate a catalog from an already-decoded rules document."""
    catalog = RuleCatalog.from_dict(document)
    validate_catalog(catalog)
    return catalog


def load_rules(path: str | Path) -> RuleCatalog:
    """
    Load the rules JSON file.

    Args:
        path: Location of the rules document

    Returns:
        Validated RuleCatalog

    Raises:
        RuleValidationError: If the file can't be read, parsed or validated
    """
    path = Path(path)
    try:
        raw = path.read_text()
    except OSError as e:
        raise RuleValidationError(f"Error opening json file: {e}") from e

    try:
        document = json.loads(raw)
    except json.JSONDecodeError as e:
        raise RuleValidationError(f"Error decoding json: {e}") from e

    catalog = parse_rules(document)
    logger.info(f"Loaded {len(catalog.rules)} rules from {path}")
    return catalog


def validate_catalog(catalog: RuleCatalog) -> None:
    """
    Check the catalog for internal consistency.

    Raises:
        RuleValidationError: On the first problem found
    """
    # Interaction ids are unique across the whole catalog
    seen: set[str] = set()
    for rule in catalog.rules:
        for interaction in rule.interactions:
            if interaction.interaction_id in seen:
                raise RuleValidationError(
                    f"Duplicate interaction ID found: {interaction.interaction_id}"
                )
            seen.add(interaction.interaction_id)

    for rule in catalog.rules:
        if rule.interactions and rule.subterms:
            raise RuleValidationError(
                "A rule has both Interactions and SubTerms, it can only have "
                f"one or the other: {rule.search_terms}"
            )

        if rule.interactions and rule.find_interaction(rule.interaction_start) is None:
            raise RuleValidationError(
                f"We couldn't find an interaction for '{rule.interaction_start}'"
            )

        for interaction in rule.interactions:
            if interaction.has_attachment:
                callback_id = interaction.attachment.get("callback_id")
                if callback_id != interaction.interaction_id:
                    raise RuleValidationError(
                        "Attachment's callback_id doesn't match the "
                        f"interaction_id: {interaction.interaction_id}"
                    )

            responses = [d.response for d in interaction.next_interaction_dynamic]
            duplicates = sorted({r for r in responses if responses.count(r) > 1})
            if duplicates:
                raise RuleValidationError(
                    f"Interaction '{interaction.interaction_id}' has more than one "
                    f"next_interaction_dynamic entry for {duplicates}"
                )

            targets = [interaction.next_interaction] + [
                d.next_interaction for d in interaction.next_interaction_dynamic
            ]
            for target in targets:
                if target != END and target not in seen:
                    raise RuleValidationError(
                        f"Interaction '{interaction.interaction_id}' points to "
                        f"unknown interaction '{target}'"
                    )


def dump_rules(catalog: RuleCatalog) -> str:
    """Pretty-print the catalog as JSON."""
    return json.dumps(catalog.to_dict(), indent=2)
