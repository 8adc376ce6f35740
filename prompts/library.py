"""Default SYSTEM-scope prompt templates for the render pipeline."""
from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from shared.models import (
    SYSTEM_SCOPE,
    PromptAuditLog,
    PromptDefinition,
    PromptVersion,
    PromptVersionStatus,
)

COMPOSITE_PROMPT = "composite_instruction"


@dataclass
class PromptTemplate:
    name: str
    description: str
    model: str
    user_template: str
    system_template: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)


PROMPTS: Dict[str, PromptTemplate] = {
    COMPOSITE_PROMPT: PromptTemplate(
        name=COMPOSITE_PROMPT,
        description="Places the prepared product image into the customer's room photo.",
        model="gemini-2.5-flash-image",
        system_template=(
            "You are compositing a product into a customer's room photo. Keep the room "
            "exactly as photographed: same walls, floor, lighting and camera. The product "
            "must keep its real proportions, materials and colors."
        ),
        user_template=(
            "Product: {{product.description}}\n"
            "Product type: {{product.type}} ({{product.archetype}})\n\n"
            "Use the first image as the product and the last image as the room. "
            "Return one photorealistic image with natural shadows and contact."
        ),
        params={"temperature": 0.3, "top_p": 0.95, "max_tokens": 8192},
    ),
}


def template_hash(
    system: Optional[str], developer: Optional[str], user: Optional[str]
) -> str:
    canonical = json.dumps(
        {"system": system, "developer": developer, "user": user},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def seed_system_prompts(session: Session) -> Dict[str, PromptDefinition]:
    """Create SYSTEM definitions with an active v1 for templates not yet stored."""

    created: Dict[str, PromptDefinition] = {}
    for template in PROMPTS.values():
        existing = session.scalar(
            select(PromptDefinition).where(
                PromptDefinition.shop_id == SYSTEM_SCOPE,
                PromptDefinition.name == template.name,
            )
        )
        if existing:
            continue
        definition = PromptDefinition(
            id=uuid.uuid4(),
            shop_id=SYSTEM_SCOPE,
            name=template.name,
            description=template.description,
            default_model=template.model,
            default_params=dict(template.params),
        )
        definition.versions.append(
            PromptVersion(
                id=uuid.uuid4(),
                version=1,
                status=PromptVersionStatus.ACTIVE,
                system_template=template.system_template,
                user_template=template.user_template,
                model=template.model,
                params={},
                template_hash=template_hash(template.system_template, None, template.user_template),
            )
        )
        session.add(definition)
        session.add(
            PromptAuditLog(
                id=uuid.uuid4(),
                shop_id=SYSTEM_SCOPE,
                actor="system",
                action="seed",
                target_type="prompt_definition",
                target_id=str(definition.id),
                after={"name": template.name, "version": 1},
            )
        )
        created[template.name] = definition
    session.commit()
    return created
