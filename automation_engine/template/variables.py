"""
Personalization variable registry and renderer.

Resolves {{ variable }} tokens in email subjects and bodies without eval/exec.
Only registered variables are substituted; lookups walk plain dicts.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


# Pattern to match {{ token }}
TOKEN_PATTERN = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")

Resolver = Callable[[dict[str, Any], datetime], Any]


@dataclass(frozen=True)
class VariableDefinition:
    """A registered personalization variable."""

    key: str
    alias: str
    description: str
    paths: tuple[tuple[str, ...], ...]
    fallback: Optional[Resolver] = None


def _unsubscribe_link(context: dict[str, Any], now: datetime) -> Optional[str]:
    base_url = _navigate(context, ("publication", "url"))
    subscriber_id = _navigate(context, ("subscriber", "id"))
    if not base_url or not subscriber_id:
        return None
    return f"{str(base_url).rstrip('/')}/unsubscribe?sid={subscriber_id}"


def _today(context: dict[str, Any], now: datetime) -> str:
    return f"{now:%B} {now.day}, {now.year}"


def _year(context: dict[str, Any], now: datetime) -> str:
    return str(now.year)


VARIABLES: tuple[VariableDefinition, ...] = (
    VariableDefinition("subscriberName", "subscriber.name", "Full name of the subscriber", (("subscriber", "name"),)),
    VariableDefinition("subscriberEmail", "subscriber.email", "Email address of the subscriber", (("subscriber", "email"),)),
    VariableDefinition("subscriberFirstName", "subscriber.firstName", "First name of the subscriber", (("subscriber", "firstName"),)),
    VariableDefinition("subscriberLastName", "subscriber.lastName", "Last name of the subscriber", (("subscriber", "lastName"),)),
    VariableDefinition("publicationName", "publication.name", "Name of the publication", (("publication", "name"),)),
    VariableDefinition("publicationUrl", "publication.url", "Public URL of the publication", (("publication", "url"),)),
    VariableDefinition("postTitle", "post.title", "Title of the related post", (("post", "title"),)),
    VariableDefinition("postUrl", "post.url", "URL of the related post", (("post", "url"),)),
    VariableDefinition("courseTitle", "course.title", "Title of the related course", (("course", "title"),)),
    VariableDefinition(
        "tierName",
        "tier.name",
        "Subscription tier of the subscriber",
        (("tier", "name"), ("subscriber", "tier")),
    ),
    VariableDefinition(
        "unsubscribeLink",
        "unsubscribe.link",
        "Link that unsubscribes the recipient",
        (("unsubscribe", "link"),),
        fallback=_unsubscribe_link,
    ),
    VariableDefinition("todayDate", "date.today", "Today's date", (("date", "today"),), fallback=_today),
    VariableDefinition("currentYear", "date.year", "Current year", (("date", "year"),), fallback=_year),
)


SAMPLE_CONTEXT: dict[str, Any] = {
    "subscriber": {
        "id": "sample-subscriber",
        "name": "John Doe",
        "email": "john@example.com",
        "firstName": "John",
        "lastName": "Doe",
        "tier": "Premium",
        "tags": [],
        "fields": {},
    },
    "publication": {
        "id": "sample-publication",
        "name": "My Newsletter",
        "url": "https://mynewsletter.com",
    },
    "post": {
        "title": "How to Build Better Habits",
        "url": "https://mynewsletter.com/posts/better-habits",
    },
    "course": {
        "title": "Complete Web Development Course",
    },
    "tier": {
        "name": "Premium",
    },
}


@dataclass
class VariableValidation:
    """Result of checking a template against the registry."""

    is_valid: bool
    invalid_variables: list[str] = field(default_factory=list)
    missing_variables: list[str] = field(default_factory=list)


def _navigate(value: Any, path: tuple[str, ...]) -> Any:
    """Walk a path through nested dicts; anything else resolves to None."""
    current = value
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


class VariableRenderer:
    """
    Substitutes registered personalization tokens.

    Supports:
    - {{ subscriberName }} - camel-case registry keys
    - {{ subscriber.name }} - dotted aliases from the legacy editor

    Lookup order for a registered token: the flat context key, then the
    nested path(s), then a computed fallback (dates, unsubscribe link).
    Unknown or unresolved tokens render as an empty string.
    """

    def __init__(
        self,
        variables: tuple[VariableDefinition, ...] = VARIABLES,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.variables = variables
        self._clock = clock
        self._by_token: dict[str, VariableDefinition] = {}
        for definition in variables:
            self._by_token[definition.key] = definition
            self._by_token[definition.alias] = definition

    @property
    def tokens(self) -> list[str]:
        """All accepted token names, keys and aliases."""
        return list(self._by_token.keys())

    def is_registered(self, token: str) -> bool:
        return token in self._by_token

    def find_tokens(self, template: str) -> list[str]:
        """Token names in the template, unique, in first-seen order."""
        seen: dict[str, None] = {}
        for match in TOKEN_PATTERN.finditer(template or ""):
            seen.setdefault(match.group(1).strip(), None)
        return list(seen)

    def lookup(
        self,
        token: str,
        context: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Any:
        """Resolve a registered token against the context; None if unresolved."""
        definition = self._by_token.get(token)
        if definition is None:
            return None

        value = context.get(definition.key)
        if value is not None:
            return value

        for path in definition.paths:
            value = _navigate(context, path)
            if value is not None:
                return value

        if definition.fallback is not None:
            return definition.fallback(context, now or self._clock())
        return None

    def render(
        self,
        template: str,
        context: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> str:
        """
        Replace every token in the template.

        Args:
            template: Text containing {{ token }} placeholders
            context: Execution context (flat keys and/or nested dicts)
            now: Time used for date variables (defaults to the clock)

        Returns:
            Rendered text; text outside token boundaries is unchanged
        """
        if not template:
            return template or ""

        moment = now or self._clock()

        def substitute(match: re.Match) -> str:
            token = match.group(1).strip()
            if not self.is_registered(token):
                logger.warning(f"Unknown personalization variable '{token}' rendered empty")
                return ""

            value = self.lookup(token, context, moment)
            if value is None or value == "":
                logger.warning(f"Personalization variable '{token}' has no value, rendered empty")
                return ""
            return str(value)

        return TOKEN_PATTERN.sub(substitute, template)

    def validate(
        self,
        template: str,
        sample: Optional[dict[str, Any]] = None,
    ) -> VariableValidation:
        """
        Check a template against the registry.

        Invalid variables are unregistered tokens. Missing variables are
        registered tokens the sample context cannot resolve; they are
        advisory and do not affect ``is_valid``.
        """
        sample_context = SAMPLE_CONTEXT if sample is None else sample
        moment = self._clock()

        invalid: list[str] = []
        missing: list[str] = []
        for token in self.find_tokens(template):
            if not self.is_registered(token):
                invalid.append(token)
            elif self.lookup(token, sample_context, moment) in (None, ""):
                missing.append(token)

        return VariableValidation(
            is_valid=not invalid,
            invalid_variables=invalid,
            missing_variables=missing,
        )


_default_renderer = VariableRenderer()


def render(template: str, context: dict[str, Any], now: Optional[datetime] = None) -> str:
    """Render with the default registry."""
    return _default_renderer.render(template, context, now)


def validate(template: str, sample: Optional[dict[str, Any]] = None) -> VariableValidation:
    """Validate with the default registry."""
    return _default_renderer.validate(template, sample)
