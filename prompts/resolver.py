"""Prompt resolution for render runs.

A prompt is looked up at shop scope first and at the shared ``SYSTEM`` scope
second. The active version's templates are overlaid field by field with any
per-run override, rendered with the run's variables, and returned together
with a snapshot holding every input that produced the text. ``replay`` turns
such a snapshot back into the identical text without touching the database.
"""
from __future__ import annotations

import copy
import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from shared.errors import NotFound, PromptBlocked
from shared.models import (
    SYSTEM_SCOPE,
    PromptDefinition,
    PromptVersion,
    PromptVersionStatus,
    ShopRuntimeConfig,
)

logger = structlog.get_logger(__name__)

PLACEHOLDER = re.compile(r"\{\{([\w.]+)\}\}")
ROLES = ("system", "developer", "user")
OVERRIDE_FIELDS = ("system_template", "developer_template", "user_template", "model", "params")


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def short_hash(value: Any) -> str:
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()[:16]


def resolve_dot_path(variables: Mapping[str, Any], path: str) -> Optional[str]:
    """Look ``path`` up as a flat key first, then as a nested dotted path."""

    if path in variables:
        value = variables[path]
        return None if value is None else str(value)
    current: Any = variables
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
        if current is None:
            return None
    return str(current)


def render_template(template: Optional[str], variables: Mapping[str, Any]) -> Optional[str]:
    if not template:
        return None

    def _substitute(match: "re.Match[str]") -> str:
        value = resolve_dot_path(variables, match.group(1))
        return match.group(0) if value is None else value

    rendered = PLACEHOLDER.sub(_substitute, template)
    unreplaced = PLACEHOLDER.findall(rendered)
    if unreplaced:
        logger.warning("prompt.unreplaced_variables", variables=sorted(set(unreplaced)))
    return rendered


def render_messages(
    templates: Mapping[str, Optional[str]], variables: Mapping[str, Any]
) -> List[Dict[str, str]]:
    messages: List[Dict[str, str]] = []
    for role in ROLES:
        content = render_template(templates.get(role), variables)
        if content:
            messages.append({"role": role, "content": content})
    return messages


def join_messages(messages: List[Dict[str, str]]) -> str:
    return "\n\n".join(message["content"] for message in messages)


@dataclass(frozen=True)
class PromptOverride:
    system_template: Optional[str] = None
    developer_template: Optional[str] = None
    user_template: Optional[str] = None
    model: Optional[str] = None
    params: Optional[Dict[str, Any]] = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "PromptOverride":
        unknown = set(payload) - set(OVERRIDE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown prompt override fields: {sorted(unknown)}")
        return cls(**{name: payload.get(name) for name in OVERRIDE_FIELDS})

    def applied(self) -> List[str]:
        return [name for name in OVERRIDE_FIELDS if getattr(self, name) is not None]

    def as_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.applied()}


@dataclass(frozen=True)
class RuntimeConfig:
    """Per-shop limits applied while resolving prompts."""

    max_concurrency: int = 5
    model_allow_list: Tuple[str, ...] = ()
    max_tokens_output_cap: int = 8192
    disabled_prompt_names: Tuple[str, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "max_concurrency": self.max_concurrency,
            "model_allow_list": list(self.model_allow_list),
            "max_tokens_output_cap": self.max_tokens_output_cap,
            "disabled_prompt_names": list(self.disabled_prompt_names),
        }


def load_runtime_config(session: Session, shop_id: str) -> RuntimeConfig:
    row = session.get(ShopRuntimeConfig, shop_id)
    if row is None:
        return RuntimeConfig()
    return RuntimeConfig(
        max_concurrency=row.max_concurrency,
        model_allow_list=tuple(row.model_allow_list or ()),
        max_tokens_output_cap=row.max_tokens_output_cap,
        disabled_prompt_names=tuple(row.disabled_prompt_names or ()),
    )


@dataclass(frozen=True)
class ResolvedPrompt:
    text: str
    snapshot: Dict[str, Any] = field(repr=False)

    @property
    def model(self) -> str:
        return self.snapshot["model"]

    @property
    def params(self) -> Dict[str, Any]:
        return dict(self.snapshot["params"])


DefinitionLookup = Callable[[Session, str, str], Optional[Tuple[PromptDefinition, str]]]


def _shop_definition(
    session: Session, shop_id: str, name: str
) -> Optional[Tuple[PromptDefinition, str]]:
    if shop_id == SYSTEM_SCOPE:
        return None
    definition = session.scalar(
        select(PromptDefinition).where(
            PromptDefinition.shop_id == shop_id, PromptDefinition.name == name
        )
    )
    return (definition, "shop") if definition else None


def _system_definition(
    session: Session, shop_id: str, name: str
) -> Optional[Tuple[PromptDefinition, str]]:
    definition = session.scalar(
        select(PromptDefinition).where(
            PromptDefinition.shop_id == SYSTEM_SCOPE, PromptDefinition.name == name
        )
    )
    return (definition, SYSTEM_SCOPE) if definition else None


DEFINITION_LOOKUPS: List[DefinitionLookup] = [_shop_definition, _system_definition]


def active_version(session: Session, definition: PromptDefinition) -> Optional[PromptVersion]:
    return session.scalar(
        select(PromptVersion)
        .where(
            PromptVersion.definition_id == definition.id,
            PromptVersion.status == PromptVersionStatus.ACTIVE,
        )
        .order_by(PromptVersion.version.desc())
        .limit(1)
    )


class PromptResolver:
    """Resolve prompt text plus an audit snapshot for a shop."""

    def __init__(self, session: Session, runtime: Optional[RuntimeConfig] = None) -> None:
        self.session = session
        self.runtime = runtime or RuntimeConfig()

    def find_definition(self, shop_id: str, prompt_name: str) -> Tuple[PromptDefinition, str]:
        for lookup in DEFINITION_LOOKUPS:
            found = lookup(self.session, shop_id, prompt_name)
            if found is not None:
                return found
        raise NotFound(f'Prompt "{prompt_name}" not found for shop {shop_id} or {SYSTEM_SCOPE}')

    def resolve(
        self,
        shop_id: str,
        prompt_name: str,
        overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
        *,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> ResolvedPrompt:
        if prompt_name in self.runtime.disabled_prompt_names:
            raise PromptBlocked(f'Prompt "{prompt_name}" is disabled for shop {shop_id}')

        definition, scope = self.find_definition(shop_id, prompt_name)
        version = active_version(self.session, definition)
        raw_override = (overrides or {}).get(prompt_name)
        override = PromptOverride.from_mapping(raw_override) if raw_override else PromptOverride()

        if version is None and not override.applied():
            raise NotFound(f'No active version for "{prompt_name}" and no override provided')

        templates = {
            role: _pick(getattr(override, f"{role}_template"), version, f"{role}_template")
            for role in ROLES
        }
        if not any(templates.values()):
            raise NotFound(f'No templates found for "{prompt_name}"')

        model = override.model or (version.model if version else None) or definition.default_model
        allow_list = self.runtime.model_allow_list
        if allow_list and model not in allow_list:
            raise PromptBlocked(f'Model "{model}" is not in the allow list for shop {shop_id}')

        params: Dict[str, Any] = {
            **(definition.default_params or {}),
            **((version.params or {}) if version else {}),
            **(override.params or {}),
        }
        if isinstance(params.get("max_tokens"), int) and self.runtime.max_tokens_output_cap:
            params["max_tokens"] = min(params["max_tokens"], self.runtime.max_tokens_output_cap)

        bound_variables = copy.deepcopy(dict(variables or {}))
        messages = render_messages(templates, bound_variables)
        text = join_messages(messages)

        snapshot = {
            "prompt_name": prompt_name,
            "shop_id": shop_id,
            "scope": scope,
            "definition_id": str(definition.id),
            "version_id": str(version.id) if version else None,
            "version": version.version if version else None,
            "template_hash": version.template_hash if version else short_hash("no-version"),
            "model": model,
            "params": params,
            "templates": templates,
            "variables": bound_variables,
            "override": override.as_dict(),
            "overrides_applied": override.applied(),
            "source": "override" if override.applied() else "active",
            "resolution_hash": short_hash({"messages": messages, "model": model, "params": params}),
        }
        logger.info(
            "prompt.resolved",
            shop_id=shop_id,
            prompt_name=prompt_name,
            scope=scope,
            version=snapshot["version"],
            source=snapshot["source"],
        )
        return ResolvedPrompt(text=text, snapshot=snapshot)

    @staticmethod
    def replay(snapshot: Mapping[str, Any]) -> str:
        """Re-render the text recorded by ``snapshot``."""

        messages = render_messages(snapshot["templates"], snapshot.get("variables") or {})
        return join_messages(messages)


def _pick(override_value: Optional[str], version: Optional[PromptVersion], attr: str) -> Optional[str]:
    if override_value is not None:
        return override_value
    if version is None:
        return None
    return getattr(version, attr)
