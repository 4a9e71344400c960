"""
Content parsing for generated blocks.

Turns the raw text a model returns into the canonical field values of a
block. Each block type is one row in BLOCK_SHAPES: the keys the reply must
carry and a mapper from the reply to field names.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from bs4 import BeautifulSoup

from .errors import FormatError, UnknownBlockError

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```[a-zA-Z]*\s*(.*?)\s*```", re.DOTALL)


@dataclass(frozen=True)
class BlockShape:
    """Expected reply shape of one block type."""
    required: Tuple[str, ...]
    mapper: Callable[[Dict[str, Any]], Dict[str, Any]]
    allow_plain_text: bool = False


def strip_fence(raw_text: str) -> str:
    """Return the body of the first ```json or bare ``` fence, or the trimmed text."""
    text = raw_text.strip()
    match = _FENCE.search(text)
    return match.group(1) if match else text


def sanitize(value: Any) -> Any:
    """Strip markup and surrounding whitespace from every string in value."""
    if isinstance(value, str):
        if "<" in value:
            value = BeautifulSoup(value, "html.parser").get_text()
        return value.strip()
    if isinstance(value, dict):
        return {key: sanitize(item) for key, item in value.items()}
    if isinstance(value, list):
        return [sanitize(item) for item in value]
    return value


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return ""
    return str(value)


def _rows(items: Any, required: Tuple[str, ...], build) -> list:
    """Map repeater items, skipping entries that lack a required key."""
    if not isinstance(items, list):
        return []
    return [
        build(item)
        for item in items
        if isinstance(item, dict) and all(key in item for key in required)
    ]


def _seo_metadata(data):
    return {
        "seo_focus_keyword": _text(data["focus_keyword"]),
        "seo_title": _text(data["seo_title"]),
        "seo_meta_description": _text(data["meta_description"]),
    }


def _hero(data):
    return {
        "hero_title": _text(data["headline"]),
        "hero_subtitle": _text(data["subheadline"]),
        "hero_summary": _text(data.get("summary")),
    }


def _about_section(data):
    return {
        "about_heading": _text(data.get("heading")),
        "about_description": _text(data.get("description")),
        "about_features": _rows(
            data["features"], ("icon_type", "title", "description"),
            lambda item: {
                "icon_type": _text(item["icon_type"]),
                "title": _text(item["title"]),
                "description": _text(item["description"]),
            },
        ),
    }


def _serp_answer(data):
    paragraph = data.get("paragraph", data.get("answer", ""))
    bullets = data.get("bullets")
    return {
        "answer_heading": _text(data.get("heading")),
        "answer_paragraph": _text(paragraph),
        "answer_bullets": [
            {"bullet_text": _text(bullet)}
            for bullet in (bullets if isinstance(bullets, list) else [])
        ],
    }


def _product_criteria(data):
    return {
        "criteria_heading": _text(data.get("heading")),
        "criteria_items": _rows(
            data["criteria"], ("title", "explanation"),
            lambda item: {
                "name": _text(item["title"]),
                "explanation": _text(item["explanation"]),
            },
        ),
    }


def _materials(data):
    return {
        "materials_heading": _text(data.get("heading")),
        "materials_items": _rows(
            data["materials"], ("name", "description"),
            lambda item: {
                "material": _text(item["name"]),
                "pros": _text(item.get("pros")),
                "cons": _text(item.get("cons")),
                "best_for": _text(item.get("best_for")),
                "allergy_notes": _text(item.get("allergy_notes")),
                "care": _text(item.get("care")),
            },
        ),
    }


def _process(data):
    return {
        "process_heading": _text(data.get("heading")),
        "process_steps": _rows(
            data["steps"], ("title", "description"),
            lambda item: {
                "step_title": _text(item["title"]),
                "step_text": _text(item["description"]),
            },
        ),
    }


def _comparison(data):
    options = data["options"] if isinstance(data["options"], list) else []
    left = options[0] if len(options) > 0 and isinstance(options[0], dict) else {}
    right = options[1] if len(options) > 1 and isinstance(options[1], dict) else {}

    def value_at(option, index):
        values = option.get("values")
        if isinstance(values, list) and index < len(values):
            return _text(values[index])
        return ""

    factors = data["factors"] if isinstance(data["factors"], list) else []
    return {
        "comparison_heading": _text(data.get("heading")),
        "comparison_left_label": _text(left.get("name")),
        "comparison_right_label": _text(right.get("name")),
        "comparison_summary": _text(data["introduction"]),
        "comparison_rows": [
            {
                "attribute": _text(factor),
                "left_text": value_at(left, index),
                "right_text": value_at(right, index),
            }
            for index, factor in enumerate(factors)
        ],
    }


def _product_showcase(data):
    return {
        "showcase_heading": _text(data.get("heading")),
        "showcase_intro": _text(data["introduction"]),
        "showcase_products": _rows(
            data["products"], ("name",),
            lambda item: {
                "product_sku": _text(item.get("sku")),
                "alt_image_url": _text(item.get("image_url")),
            },
        ),
    }


def _size_fit(data):
    return {
        "size_heading": _text(data.get("heading")),
        "comfort_fit_notes": _text(data.get("comfort_notes", data["introduction"])),
    }


def _care_warranty(data):
    care = data["care"] if isinstance(data["care"], dict) else {}
    warranty = data["warranty"] if isinstance(data["warranty"], dict) else {}
    tips = care.get("tips")
    return {
        "care_heading": _text(care.get("heading")),
        "care_bullets": [
            {"bullet": _text(tip)}
            for tip in (tips if isinstance(tips, list) else [])
        ],
        "warranty_heading": _text(warranty.get("heading")),
        "warranty_text": _text(warranty.get("information")),
    }


def _ethics(data):
    return {
        "ethics_heading": _text(data.get("heading")),
        "ethics_text": _text(data["introduction"]),
        "certifications": _rows(
            data.get("certifications"), ("name",),
            lambda item: {
                "cert_name": _text(item["name"]),
                "cert_link": _text(item.get("link")),
            },
        ),
    }


def _faqs(data):
    return {
        "faqs_heading": _text(data.get("heading")),
        "faq_items": _rows(
            data["faqs"], ("question", "answer"),
            lambda item: {
                "question": _text(item["question"]),
                "answer": _text(item["answer"]),
            },
        ),
    }


def _cta(data):
    return {
        "cta_heading": _text(data["heading"]),
        "cta_text": _text(data["body"]),
        "cta_primary_label": _text(data.get("primary_label")),
        "cta_primary_url": _text(data.get("primary_url")),
        "cta_secondary_label": _text(data.get("secondary_label")),
        "cta_secondary_url": _text(data.get("secondary_url")),
    }


BLOCK_SHAPES: Dict[str, BlockShape] = {
    "seo_metadata": BlockShape(("focus_keyword", "seo_title", "meta_description"), _seo_metadata),
    "hero": BlockShape(("headline", "subheadline"), _hero),
    "about_section": BlockShape(("features",), _about_section),
    "serp_answer": BlockShape((), _serp_answer, allow_plain_text=True),
    "product_criteria": BlockShape(("criteria",), _product_criteria),
    "materials": BlockShape(("introduction", "materials"), _materials),
    "process": BlockShape(("introduction", "steps"), _process),
    "comparison": BlockShape(("introduction", "factors", "options"), _comparison),
    "product_showcase": BlockShape(("introduction", "products"), _product_showcase),
    "size_fit": BlockShape(("introduction", "tips"), _size_fit),
    "care_warranty": BlockShape(("care", "warranty"), _care_warranty),
    "ethics": BlockShape(("introduction", "aspects"), _ethics),
    "faqs": BlockShape(("faqs",), _faqs),
    "cta": BlockShape(("heading", "body"), _cta),
}


class ContentParser:
    """Validates generated text against a block shape and maps it to fields."""

    def __init__(self, shapes: Optional[Dict[str, BlockShape]] = None):
        self.shapes = dict(BLOCK_SHAPES if shapes is None else shapes)

    def supports(self, block_type: str) -> bool:
        return block_type in self.shapes

    def parse(self, block_type: str, raw_text: str) -> Dict[str, Any]:
        """Parse a model reply into canonical field values.

        Args:
            block_type: Block identifier
            raw_text: Model reply, optionally wrapped in a markdown fence

        Returns:
            Mapping of canonical field name to sanitized value

        Raises:
            UnknownBlockError: If no shape is registered for block_type
            FormatError: If the reply does not match the block's shape
        """
        shape = self.shapes.get(block_type)
        if shape is None:
            raise UnknownBlockError(f"Unknown block type: {block_type}")

        text = strip_fence(raw_text or "")
        data = self._decode(text)

        if data is None:
            if not shape.allow_plain_text or not text:
                self._reject(block_type, raw_text)
            data = {"answer": text}

        missing = [key for key in shape.required if key not in data]
        if missing:
            self._reject(block_type, raw_text, missing)

        return sanitize(shape.mapper(data))

    @staticmethod
    def _decode(text: str) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(text)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _reject(block_type: str, raw_text: str, missing=None):
        logger.warning(
            "event=parser.invalid_format | block=%s | missing=%s | raw=%.200s",
            block_type, missing, raw_text,
        )
        raise FormatError(f"Invalid {block_type} content format")
