"""
Prompt construction for block generation.
"""

import re
from typing import Dict, Optional

from ..storage.models import Page

_PLACEHOLDER = re.compile(r"\{([a-z_]+)\}")

BUSINESS_FIELDS = (
    "business_name", "business_type", "business_description",
    "business_address", "service_area", "business_phone",
    "business_email", "business_url", "years_in_business",
    "usps", "certifications",
)


def infer_page_type(topic: str) -> str:
    """Classify a page by its topic name."""
    if not topic:
        return "general"
    topic = topic.lower()
    if "comparison" in topic:
        return "comparison"
    if "education" in topic:
        return "education"
    return "collection"


def render_template(template: str, context: Dict[str, str]) -> str:
    """Substitute {placeholder} slots; unknown placeholders render empty.

    Only bare lower-case identifiers are treated as slots, so literal JSON
    examples in a template pass through untouched.
    """
    return _PLACEHOLDER.sub(lambda m: str(context.get(m.group(1), "") or ""), template)


class PromptBuilder:
    """Builds the substitution context for a page and renders block prompts."""

    def __init__(self, catalog, business: Optional[Dict[str, str]] = None):
        self.catalog = catalog
        self.business = dict(business or {})

    def build_context(self, page: Page, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Context for a page; `extra` wins over derived values."""
        focus_keyword = (
            page.fields.get("seo_focus_keyword")
            or page.focus_keyword
            or page.title
        )
        context = {
            "page_title": page.title,
            "page_topic": page.topic,
            "focus_keyword": focus_keyword,
            "page_type": infer_page_type(page.topic),
        }
        for key in BUSINESS_FIELDS:
            context[key] = self.business.get(key, "")
        if not context["business_type"]:
            context["business_type"] = "content"
        context.update(extra or {})
        return context

    def render(self, block_type: str, context: Dict[str, str]) -> Dict[str, str]:
        """Render the system and user messages for a block.

        Raises:
            UnknownBlockError: If the catalog has no template for block_type
        """
        template = self.catalog.template(block_type)
        return {
            "system": render_template(template.system, context),
            "user": render_template(template.user, context),
        }
