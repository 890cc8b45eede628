"""
Data models and abstract base classes for the dialog bot.

The rule catalog types mirror the JSON rules document. They are built once
at startup and treated as read-only afterwards.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Any
from enum import Enum

from .errors import RuleValidationError

END = "end"


class InteractionType(Enum):
    """How an interaction prompts the user."""
    TEXT = "text"
    ATTACHMENT = "attachment"
    FINAL_TEXT = "finalText"

    @classmethod
    def from_string(cls, value: str) -> Optional["InteractionType"]:
        for member in cls:
            if member.value == value:
                return member
        return None


def _require(data: dict, key: str, where: str) -> Any:
    if key not in data:
        raise RuleValidationError(f"Missing '{key}' in {where}")
    return data[key]


def _string_list(value: Any, where: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise RuleValidationError(f"Expected a list of strings for {where}")
    return list(value)


@dataclass
class DynamicNext:
    """One branch of a dynamic next-interaction table."""
    response: str
    next_interaction: str

    def to_dict(self) -> dict:
        return {
            "response": self.response,
            "next_interaction": self.next_interaction,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DynamicNext":
        return cls(
            response=str(_require(data, "response", "next_interaction_dynamic")),
            next_interaction=str(
                _require(data, "next_interaction", "next_interaction_dynamic")
            ),
        )


@dataclass
class Interaction:
    """A single step of a guided dialog."""
    interaction_id: str
    stop_word: str
    type: InteractionType
    question: str = ""
    next_interaction: str = END
    attachment: dict = field(default_factory=dict)
    next_interaction_dynamic: list[DynamicNext] = field(default_factory=list)

    @property
    def has_attachment(self) -> bool:
        return bool(self.attachment)

    def resolve_next(self, selection: str, default: Optional[str] = None) -> str:
        """
        Pick the next interaction for a selected option.

        Validated catalogs hold at most one dynamic entry per response.
        Without a match the default (or the declared next interaction) stands.
        """
        for branch in self.next_interaction_dynamic:
            if branch.response == selection:
                return branch.next_interaction
        return default if default is not None else self.next_interaction

    def to_dict(self) -> dict:
        data = {
            "interaction_id": self.interaction_id,
            "stop_word": self.stop_word,
            "type": self.type.value,
            "question": self.question,
            "next_interaction": self.next_interaction,
        }
        if self.attachment:
            data["attachment"] = self.attachment
        if self.next_interaction_dynamic:
            data["next_interaction_dynamic"] = [
                d.to_dict() for d in self.next_interaction_dynamic
            ]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Interaction":
        if "interaction_id" in data:
            interaction_id = data["interaction_id"]
        else:
            interaction_id = _require(data, "id", "interaction")

        raw_type = data.get("type", InteractionType.TEXT.value)
        interaction_type = InteractionType.from_string(raw_type)
        if interaction_type is None:
            raise RuleValidationError(
                f"Unknown interaction type '{raw_type}' for interaction '{interaction_id}'"
            )

        attachment = data.get("attachment") or {}
        if not isinstance(attachment, dict):
            raise RuleValidationError(
                f"Attachment for interaction '{interaction_id}' must be an object"
            )

        return cls(
            interaction_id=str(interaction_id),
            stop_word=str(data.get("stop_word", "")),
            type=interaction_type,
            question=str(data.get("question", "")),
            next_interaction=str(data.get("next_interaction") or END),
            attachment=attachment,
            next_interaction_dynamic=[
                DynamicNext.from_dict(d)
                for d in data.get("next_interaction_dynamic") or []
            ],
        )


@dataclass
class SubTerm:
    """A canned reply offered in a one-round disambiguation dialog."""
    search_terms: list[str]
    response: str = ""

    def matches(self, text: str) -> Optional[str]:
        """Return the first search term contained in text, if any."""
        lowered = text.lower()
        for term in self.search_terms:
            if term.lower() in lowered:
                return term
        return None

    def to_dict(self) -> dict:
        return {"terms": self.search_terms, "response": self.response}

    @classmethod
    def from_dict(cls, data: dict) -> "SubTerm":
        return cls(
            search_terms=_string_list(_require(data, "terms", "subterm"), "subterm terms"),
            response=str(data.get("response", "")),
        )


@dataclass
class Rule:
    """
    Maps search terms to a response, an interaction sequence, or a
    sub-term dialog.
    """
    search_terms: list[str]
    response: str = ""
    attachment: dict = field(default_factory=dict)
    interactions: list[Interaction] = field(default_factory=list)
    interaction_start: str = ""
    interaction_end_mods: list[str] = field(default_factory=list)
    subterms: list[SubTerm] = field(default_factory=list)

    def matches(self, text: str) -> Optional[str]:
        """Return the first search term contained in text, if any."""
        lowered = text.lower()
        for term in self.search_terms:
            if term.lower() in lowered:
                return term
        return None

    def find_interaction(self, interaction_id: str) -> Optional[Interaction]:
        for interaction in self.interactions:
            if interaction.interaction_id == interaction_id:
                return interaction
        return None

    def questions(self) -> dict[str, str]:
        """Map of interaction id to question, as handed to end modules."""
        return {i.interaction_id: i.question for i in self.interactions}

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"terms": self.search_terms}
        if self.response:
            data["response"] = self.response
        if self.attachment:
            data["attachment"] = self.attachment
        if self.interactions:
            data["interactions"] = [i.to_dict() for i in self.interactions]
            data["interaction_start"] = self.interaction_start
        if self.interaction_end_mods:
            data["interaction_end_mods"] = self.interaction_end_mods
        if self.subterms:
            data["subterms"] = [s.to_dict() for s in self.subterms]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Rule":
        if not isinstance(data, dict):
            raise RuleValidationError("Each rule must be an object")

        attachment = data.get("attachment") or {}
        if not isinstance(attachment, dict):
            raise RuleValidationError("Rule attachment must be an object")

        return cls(
            search_terms=_string_list(_require(data, "terms", "rule"), "rule terms"),
            response=str(data.get("response", "")),
            attachment=attachment,
            interactions=[
                Interaction.from_dict(i) for i in data.get("interactions") or []
            ],
            interaction_start=str(data.get("interaction_start", "")),
            interaction_end_mods=_string_list(
                data.get("interaction_end_mods") or [], "interaction_end_mods"
            ),
            subterms=[SubTerm.from_dict(s) for s in data.get("subterms") or []],
        )


@dataclass
class RuleCatalog:
    """The full rule set loaded from the rules document."""
    rules: list[Rule]
    default_response: str
    interaction_cancelled_response: str = ""
    interaction_complete_response: str = ""

    def __post_init__(self):
        # First occurrence wins so lookups agree with catalog order
        self._index: dict[str, tuple[Rule, Interaction]] = {}
        for rule in self.rules:
            for interaction in rule.interactions:
                self._index.setdefault(interaction.interaction_id, (rule, interaction))

    def match(self, text: str) -> Optional[tuple[Rule, str]]:
        """Return the first rule (in catalog order) matching text, with the term."""
        for rule in self.rules:
            term = rule.matches(text)
            if term is not None:
                return rule, term
        return None

    def find_interaction(self, interaction_id: str) -> Optional[Interaction]:
        entry = self._index.get(interaction_id)
        return entry[1] if entry else None

    def find_rule_by_interaction(self, interaction_id: str) -> Optional[Rule]:
        entry = self._index.get(interaction_id)
        return entry[0] if entry else None

    def find_rule_by_term(self, term: str) -> Optional[Rule]:
        for rule in self.rules:
            if term in rule.search_terms:
                return rule
        return None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "rules": [r.to_dict() for r in self.rules],
            "default": self.default_response,
        }
        if self.interaction_cancelled_response:
            data["interaction_cancelled_response"] = self.interaction_cancelled_response
        if self.interaction_complete_response:
            data["interaction_complete_response"] = self.interaction_complete_response
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RuleCatalog":
        if not isinstance(data, dict):
            raise RuleValidationError("Rules document must be an object")

        rules = _require(data, "rules", "rules document")
        if not isinstance(rules, list):
            raise RuleValidationError("'rules' must be a list")

        return cls(
            rules=[Rule.from_dict(r) for r in rules],
            default_response=str(_require(data, "default", "rules document")),
            interaction_cancelled_response=str(
                data.get("interaction_cancelled_response", "")
            ),
            interaction_complete_response=str(
                data.get("interaction_complete_response", "")
            ),
        )


class EndModule(ABC):
    """
    Abstract base class that all end-of-interaction modules must implement.

    A module is run once an interaction sequence completes, receiving the
    full session field map.
    """

    @abstractmethod
    def name(self) -> str:
        """Return the name rules use to reference this module."""
        pass

    @abstractmethod
    def declared_env_vars(self) -> list[str]:
        """Return the environment variable suffixes this module reads."""
        pass

    @abstractmethod
    def run(
        self,
        payload: dict[str, str],
        env: dict[str, str],
        interaction_questions: dict[str, str]
    ) -> None:
        """
        Act on a completed interaction.

        Args:
            payload: Session field map, including response:<id> entries
            env: Resolved environment, keyed by NAME_VAR in upper case
            interaction_questions: Interaction id to question for the rule

        Raises:
            Exception: Any failure; callers log it and carry on
        """
        pass

    def env_var_names(self) -> list[str]:
        """Fully-qualified environment variable names for this module."""
        return [f"{self.name()}_{var}".upper() for var in self.declared_env_vars()]
