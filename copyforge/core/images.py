"""
Tag-based image matching for generated pages.

Images in the media library carry tag slugs. A page's focus keyword, topic
and category are reduced to the same kind of slugs and matched against
them with progressively looser requirements.
"""

import logging
import random
import re
from typing import Dict, Iterable, List, Optional

from ..storage.models import ImageRecord

logger = logging.getLogger(__name__)

ALT_TEXT_MAX_LENGTH = 125
MATCH_LEVELS = (3, 2, 1)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_SEPARATORS = re.compile(r"[\s\-_]+")
_NON_SLUG = re.compile(r"[^a-z0-9-]+")

_POSSESSIVES = {"mens": "Men's", "womens": "Women's"}


def slugify(value: str) -> str:
    """Lower-case a word and drop everything that isn't a slug character."""
    slug = _NON_SLUG.sub("", value.lower())
    return slug.strip("-")


def extract_tags(context: Dict[str, str]) -> List[str]:
    """Turn focus_keyword, topic and category into ordered unique tag slugs.

    Words of two characters or fewer are discarded.
    """
    tags: List[str] = []
    for key in ("focus_keyword", "topic", "category"):
        value = context.get(key)
        if not value:
            continue
        words = _SEPARATORS.split(_CAMEL_BOUNDARY.sub(" ", str(value)))
        for word in words:
            slug = slugify(word)
            if len(slug) > 2 and slug not in tags:
                tags.append(slug)
    return tags


class ImageMatcher:
    """Picks a library image for a page context.

    Args:
        media_store: Source of image records (library_images, get, default_image)
        default_image_id: Configured fallback image; takes precedence over the
            store's default flag when it names an existing image
        rng: Random source used to choose among equally good candidates
    """

    def __init__(self, media_store, default_image_id: Optional[int] = None, rng: Optional[random.Random] = None):
        self.media_store = media_store
        self.default_image_id = default_image_id
        self.rng = rng or random.Random()

    def find_match(self, context: Dict[str, str]) -> Optional[int]:
        """Return the id of the best-matching image, the default, or None."""
        tags = extract_tags(context)
        if not tags:
            logger.debug("event=images.no_tags | context=%s", context)
            return self.default_image()

        images = self.media_store.library_images()
        for size in MATCH_LEVELS:
            wanted = set(tags[:size])
            if size > 1 and len(tags) < size:
                continue
            candidates = [image.id for image in images if wanted <= image.tags]
            if candidates:
                selected = self.rng.choice(candidates)
                logger.info(
                    "event=images.matched | tags=%s | candidates=%d | image_id=%s",
                    ",".join(tags[:size]), len(candidates), selected,
                )
                return selected

        default_id = self.default_image()
        logger.info("event=images.no_match | tags=%s | default=%s", ",".join(tags), default_id)
        return default_id

    def default_image(self) -> Optional[int]:
        if self.default_image_id is not None and self.media_store.get(self.default_image_id):
            return self.default_image_id
        record = self.media_store.default_image()
        return record.id if record else None

    def alt_text(self, image_id: int, context: Dict[str, str]) -> str:
        """Build alt text from an image's tags, or fall back to the page title."""
        record: Optional[ImageRecord] = self.media_store.get(image_id)
        if record is None or not record.tags:
            return str(context.get("page_title", "")).strip()
        return build_alt_text(sorted(record.tags))


def build_alt_text(tags: Iterable[str]) -> str:
    """["mens", "platinum", "wedding-band"] -> "Men's Platinum Wedding band"."""
    parts = []
    for tag in tags:
        possessive = _POSSESSIVES.get(tag.lower())
        parts.append(possessive or tag[:1].upper() + tag[1:])
    alt = " ".join(parts).replace("-", " ")
    if len(alt) > ALT_TEXT_MAX_LENGTH:
        alt = alt[:ALT_TEXT_MAX_LENGTH]
        if " " in alt:
            alt = alt[:alt.rindex(" ")]
    return alt.strip()
