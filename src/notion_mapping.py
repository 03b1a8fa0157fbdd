"""Mapping between Notion pages and plain text / brand entities.

Everything in this module is pure: functions take already-fetched Notion
JSON and return new values. Malformed input never raises; missing or
mistyped fields degrade to defaults, and only a page without an id or a
brand name is dropped entirely.

- blocks_to_text / text_to_blocks: page body <-> plain text
- page_to_brand: page property bag -> Brand
- build_brand_filter: high-level query intents -> Notion filter
- build_brand_properties: Brand fields -> Notion property bag
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

logger = logging.getLogger("notion-brand-mcp.mapping")


# =============================================================================
# Value Accessor
# =============================================================================


def get_in(value: Any, *path: str | int) -> Any:
    """Walk a JSON value along a chain of keys and indices.

    String steps look up mapping keys, int steps index into lists. Any
    step that does not apply (missing key, index out of range, wrong
    container type) yields None instead of raising.

    Args:
        value: Decoded JSON value (dict, list, or scalar).
        *path: Keys and indices to follow, e.g. ("properties", "Cover", "files", 0).

    Returns:
        The value at the end of the path, or None if any step is absent.
    """
    current = value
    for step in path:
        # bool is an int subclass; never a valid index here
        if isinstance(step, bool):
            return None
        if isinstance(step, str):
            if not isinstance(current, dict):
                return None
            current = current.get(step)
        elif isinstance(step, int):
            if not isinstance(current, list) or not 0 <= step < len(current):
                return None
            current = current[step]
        else:
            return None
        if current is None:
            return None
    return current


def as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def as_list(value: Any) -> Optional[list]:
    return value if isinstance(value, list) else None


def as_dict(value: Any) -> Optional[dict]:
    return value if isinstance(value, dict) else None


def as_bool(value: Any) -> Optional[bool]:
    """Return value if it is a real boolean (0/1 are not accepted)."""
    return value if isinstance(value, bool) else None


def get_str(value: Any, *path: str | int) -> Optional[str]:
    return as_str(get_in(value, *path))


def get_list(value: Any, *path: str | int) -> Optional[list]:
    return as_list(get_in(value, *path))


def get_dict(value: Any, *path: str | int) -> Optional[dict]:
    return as_dict(get_in(value, *path))


def get_bool(value: Any, *path: str | int) -> Optional[bool]:
    return as_bool(get_in(value, *path))


# =============================================================================
# Rich Text
# =============================================================================


def rich_text_run_text(run: Any) -> Optional[str]:
    """Plain text of one rich-text run.

    Pages read from the API carry plain_text; blocks built locally for
    writing only carry text.content.
    """
    text = get_str(run, "plain_text")
    if text is None:
        text = get_str(run, "text", "content")
    return text


def rich_text_to_plain(runs: Any) -> str:
    """Concatenate the plain text of every run, skipping runs without text."""
    parts = []
    for run in as_list(runs) or []:
        text = rich_text_run_text(run)
        if text is not None:
            parts.append(text)
    return "".join(parts)


def text_to_rich_text(text: str) -> list[dict]:
    """Wrap text in a single unformatted rich-text run."""
    return [{"type": "text", "text": {"content": text}}]


# =============================================================================
# Block-to-Text Projector
# =============================================================================

PARAGRAPH_SEPARATOR = "\n\n"

# Block types whose body is a single rich_text array
TEXT_BLOCK_TYPES = frozenset({
    "paragraph",
    "heading_1",
    "heading_2",
    "heading_3",
    "bulleted_list_item",
    "numbered_list_item",
})


def block_to_line(block: Any) -> Optional[str]:
    """Render one block as a line of plain text.

    Returns:
        The concatenated run text, or None if the block type is not a
        text block or its rich_text array is missing or malformed.
    """
    block_type = get_str(block, "type")
    if block_type not in TEXT_BLOCK_TYPES:
        return None
    runs = get_list(block, block_type, "rich_text")
    if runs is None:
        return None
    return rich_text_to_plain(runs)


def blocks_to_text(blocks: Any) -> str:
    """Convert a sequence of Notion blocks into a plain-text document.

    Headings, paragraphs and list items each become one line; every other
    block type is dropped. Lines are separated by a blank line.

    Args:
        blocks: List of raw block objects, in document order.

    Returns:
        Plain text, or "" for an empty (or non-list) input.
    """
    lines = []
    for block in as_list(blocks) or []:
        line = block_to_line(block)
        if line is not None:
            lines.append(line)
    return PARAGRAPH_SEPARATOR.join(lines)


# =============================================================================
# Text-to-Block Builder
# =============================================================================


def text_to_blocks(text: str) -> list[dict]:
    """Convert plain text into paragraph blocks, one per blank-line segment.

    Segments are used verbatim (no trimming), and empty segments still
    produce an empty paragraph. Headings and lists are not recognized, so
    this only inverts blocks_to_text for plain multi-paragraph text.
    """
    return [
        {
            "object": "block",
            "type": "paragraph",
            "paragraph": {"rich_text": text_to_rich_text(segment)},
        }
        for segment in text.split(PARAGRAPH_SEPARATOR)
    ]


# =============================================================================
# Brand Entity
# =============================================================================

# Database property names
BRAND_NAME_PROPERTY = "Brand Name"
SERVICES_PROPERTY = "Services"
DESCRIPTION_PROPERTY = "Description"
TAGLINE_PROPERTY = "Tagline"
SLUG_PROPERTY = "Slug"
WEBSITE_PROPERTY = "Website"
HIGHLIGHTED_PROPERTY = "00. Highlighted"

# Numbered gallery slots: (slot, property name)
IMAGE_SLOTS = tuple((n, f"Image [{n}]") for n in range(1, 11))

# Single-image slots: (output key, property name); only the first file is used
SPECIAL_IMAGE_SLOTS = (
    ("hero_image", "Hero Image"),
    ("cover", "Cover"),
    ("avatar", "Avatar"),
    ("square_image_1", "Image [7.1] square image"),
    ("square_image_2", "Image [7.2] square image"),
)

VIDEO_SLOTS = (
    ("video_1", "Video 1"),
    ("video_2", "Video 2"),
)

# Where a file entry may keep its URL, tried in order
FILE_URL_PATHS = (
    ("url",),
    ("external", "url"),
    ("file", "url"),
)


@dataclass
class BrandImage:
    slot: int
    url: str

    def to_dict(self) -> dict:
        return {"slot": self.slot, "url": self.url}


@dataclass
class BrandMedia:
    """Gallery images plus the optional single-image slots."""
    images: list[BrandImage] = field(default_factory=list)
    hero_image: Optional[str] = None
    cover: Optional[str] = None
    avatar: Optional[str] = None
    square_image_1: Optional[str] = None
    square_image_2: Optional[str] = None

    def to_dict(self) -> dict:
        """Serialize; unresolved single-image slots are left out entirely."""
        result: dict = {"images": [image.to_dict() for image in self.images]}
        for key, _ in SPECIAL_IMAGE_SLOTS:
            url = getattr(self, key)
            if url is not None:
                result[key] = url
        return result


@dataclass
class BrandVideos:
    video_1: Optional[str] = None
    video_2: Optional[str] = None

    def to_dict(self) -> dict:
        return {"video_1": self.video_1, "video_2": self.video_2}


@dataclass
class Brand:
    """A brand row projected from a Notion database page."""
    id: str
    name: str
    services: list[str] = field(default_factory=list)
    description: str = ""
    website: str = ""
    tagline: str = ""
    slug: str = ""
    media: BrandMedia = field(default_factory=BrandMedia)
    videos: BrandVideos = field(default_factory=BrandVideos)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "services": list(self.services),
            "description": self.description,
            "website": self.website,
            "tagline": self.tagline,
            "slug": self.slug,
            "media": self.media.to_dict(),
            "videos": self.videos.to_dict(),
        }


# =============================================================================
# Entity Projector
# =============================================================================


def _first_run_text(properties: Any, name: str, prop_type: str) -> Optional[str]:
    """Text of the first run of a title/rich_text property, if any."""
    return rich_text_run_text(get_in(properties, name, prop_type, 0))


def _multi_select_names(properties: Any, name: str) -> list[str]:
    names = []
    for option in get_list(properties, name, "multi_select") or []:
        option_name = get_str(option, "name")
        if option_name is not None:
            names.append(option_name)
    return names


def resolve_file_url(file_entry: Any) -> Optional[str]:
    """URL of a files-property entry, whether external or Notion-hosted."""
    for path in FILE_URL_PATHS:
        url = get_str(file_entry, *path)
        if url is not None:
            return url
    return None


def _file_urls(properties: Any, name: str) -> list[str]:
    urls = []
    for file_entry in get_list(properties, name, "files") or []:
        url = resolve_file_url(file_entry)
        if url is not None:
            urls.append(url)
    return urls


def extract_brand_media(properties: Any) -> BrandMedia:
    """Collect gallery and single-slot images from a property bag."""
    media = BrandMedia()
    for slot, prop_name in IMAGE_SLOTS:
        for url in _file_urls(properties, prop_name):
            media.images.append(BrandImage(slot=slot, url=url))
    for key, prop_name in SPECIAL_IMAGE_SLOTS:
        setattr(media, key, resolve_file_url(get_in(properties, prop_name, "files", 0)))
    return media


def extract_brand_videos(properties: Any) -> BrandVideos:
    videos = BrandVideos()
    for key, prop_name in VIDEO_SLOTS:
        setattr(videos, key, get_str(properties, prop_name, "url"))
    return videos


def page_to_brand(page: Any) -> Optional[Brand]:
    """Project a Notion database page into a Brand.

    Only the page id and the first run of the "Brand Name" title are
    required; every other field falls back to an empty value.

    Args:
        page: Raw page object as returned by the Notion API.

    Returns:
        Brand, or None if the page has no id or no brand name.
    """
    page_id = get_str(page, "id")
    if page_id is None:
        return None

    properties = get_dict(page, "properties")
    name = _first_run_text(properties, BRAND_NAME_PROPERTY, "title")
    if name is None:
        return None

    return Brand(
        id=page_id,
        name=name,
        services=_multi_select_names(properties, SERVICES_PROPERTY),
        description=_first_run_text(properties, DESCRIPTION_PROPERTY, "rich_text") or "",
        website=get_str(properties, WEBSITE_PROPERTY, "url") or "",
        tagline=_first_run_text(properties, TAGLINE_PROPERTY, "rich_text") or "",
        slug=_first_run_text(properties, SLUG_PROPERTY, "rich_text") or "",
        media=extract_brand_media(properties),
        videos=extract_brand_videos(properties),
    )


def pages_to_brands(pages: Any) -> list[Brand]:
    """Project every page, dropping those that cannot yield a Brand."""
    brands = []
    for page in as_list(pages) or []:
        brand = page_to_brand(page)
        if brand is None:
            logger.debug(f"Skipping page without id or brand name: {get_str(page, 'id')}")
            continue
        brands.append(brand)
    return brands


# =============================================================================
# Filter Builder
# =============================================================================


def build_brand_filter(
    highlighted: Optional[bool] = None,
    services: Optional[Sequence[str]] = None
) -> Optional[dict]:
    """Translate query intents into a Notion database filter.

    At most one condition is sent. A services filter replaces the
    highlighted filter, and only the first service is matched.

    Args:
        highlighted: Match rows whose "00. Highlighted" checkbox equals this.
        services: Service names; rows whose "Services" contain the first one.

    Returns:
        Notion filter object, or None when no intent is given.
    """
    filter_obj = None
    if highlighted is not None:
        filter_obj = {
            "property": HIGHLIGHTED_PROPERTY,
            "checkbox": {"equals": highlighted},
        }
    if services:
        filter_obj = {
            "property": SERVICES_PROPERTY,
            "multi_select": {"contains": services[0]},
        }
    return filter_obj


# =============================================================================
# Property Builder
# =============================================================================


def build_brand_properties(
    name: Optional[str] = None,
    services: Optional[Sequence[str]] = None,
    description: Optional[str] = None,
    website: Optional[str] = None,
    tagline: Optional[str] = None,
    slug: Optional[str] = None,
    highlighted: Optional[bool] = None
) -> dict[str, dict]:
    """Build a Notion property bag for creating or updating a brand row.

    Arguments left as None are omitted, so the result can be sent as a
    partial update.
    """
    properties: dict[str, dict] = {}
    if name is not None:
        properties[BRAND_NAME_PROPERTY] = {"title": text_to_rich_text(name)}
    if services is not None:
        properties[SERVICES_PROPERTY] = {
            "multi_select": [{"name": service} for service in services]
        }
    for prop_name, value in (
        (DESCRIPTION_PROPERTY, description),
        (TAGLINE_PROPERTY, tagline),
        (SLUG_PROPERTY, slug),
    ):
        if value is not None:
            properties[prop_name] = {"rich_text": text_to_rich_text(value)}
    if website is not None:
        # Notion clears a url property with null, not ""
        properties[WEBSITE_PROPERTY] = {"url": website or None}
    if highlighted is not None:
        properties[HIGHLIGHTED_PROPERTY] = {"checkbox": highlighted}
    return properties
