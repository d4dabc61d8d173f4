"""HTML sanitization for message bodies.

Every body shown to a user passes through sanitize_html(). It removes active
content, neutralizes script URLs, forces links into a new browsing context
and classifies images: tracking pixels are hidden and counted, remote images
are optionally replaced by a placeholder. Blocked images keep their source in
``data-original-src`` so restore_blocked_images() can bring them back.

SECURITY NOTE:
Style parsing uses the `regex` library with a timeout on every match so a
hostile inline style cannot stall the event loop (ReDoS).

Usage:
    from mailsync.sanitize import sanitize_html

    result = sanitize_html(raw_html, block_remote_images=False)
    cache_entry.body = result.html
    cache_entry.tracking_pixel_count = result.tracking_pixel_count
"""

from __future__ import annotations

from dataclasses import dataclass

import regex
from bs4 import BeautifulSoup, Comment

from mailsync.core.logging import get_logger

logger = get_logger(__name__)

# Regex timeout in seconds (all match operations MUST use this)
REGEX_TIMEOUT = 1.0

ACTIVE_CONTENT_TAGS = ["script", "iframe", "object", "embed", "form", "base", "meta", "frame"]
URL_ATTRIBUTES = ("href", "src", "action", "formaction", "xlink:href", "background")

TRACKING_PIXEL_ALT = "Tracking pixel blocked"
BLOCKED_IMAGE_ALT = "Image blocked for privacy"
PIXEL_STYLE = "display: none;"
PLACEHOLDER_STYLE = (
    "display: inline-block; min-width: 100px; min-height: 100px; background: #f3f4f6; "
    "border: 2px dashed #d1d5db; border-radius: 8px; padding: 8px; color: #6b7280; "
    "font-size: 12px; text-align: center;"
)

# Dimensions below this (in both axes) mark an image as a pixel
SMALL_IMAGE_PX = 10

DANGEROUS_URL_PATTERN = regex.compile(r"^\s*(?:javascript|vbscript):", regex.IGNORECASE)
SAFE_IMAGE_URL_PATTERN = regex.compile(r"^(?:https?://|data:image/)", regex.IGNORECASE)
NUMERIC_ATTR_PATTERN = regex.compile(r"^\s*(\d+)")
STYLE_WIDTH_PATTERN = regex.compile(
    r"(?<![-\w])width\s*:\s*(\d+(?:\.\d+)?)(?:px)?", regex.IGNORECASE
)
STYLE_HEIGHT_PATTERN = regex.compile(
    r"(?<![-\w])height\s*:\s*(\d+(?:\.\d+)?)(?:px)?", regex.IGNORECASE
)
INVISIBLE_STYLE_PATTERN = regex.compile(
    r"opacity\s*:\s*0(?:\.0+)?(?![.\d])|display\s*:\s*none|visibility\s*:\s*hidden",
    regex.IGNORECASE,
)
BLANK_LINES_PATTERN = regex.compile(r"\n\s*\n+")
BLOCK_TAGS = ["p", "div", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "pre"]


@dataclass(frozen=True)
class SanitizeResult:
    """Output of sanitize_html()."""

    html: str
    has_blocked_images: bool = False
    tracking_pixel_count: int = 0
    blocked_remote_image_count: int = 0


def _search(pattern: regex.Pattern, text: str) -> regex.Match | None:
    try:
        return pattern.search(text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("regex_timeout", pattern=pattern.pattern[:40], text_length=len(text))
        return None


def _attr_dimension(value: object) -> int | None:
    if value is None:
        return None
    match = _search(NUMERIC_ATTR_PATTERN, str(value))
    return int(match.group(1)) if match else None


def _style_dimension(pattern: regex.Pattern, style: str) -> int | None:
    match = _search(pattern, style)
    return round(float(match.group(1))) if match else None


def is_tracking_pixel(width_attr: object, height_attr: object, style: str | None) -> bool:
    """Classify an image as a tracking pixel.

    Dimensions come from the width/height attributes first, then from the
    inline style. An image is a pixel if it is exactly 1x1, smaller than 10px
    in both axes, styled invisible, or 1px in one axis with the other axis
    missing or under 10px.
    """
    style = (style or "").lower()
    invisible = bool(style) and _search(INVISIBLE_STYLE_PATTERN, style) is not None

    width = _attr_dimension(width_attr)
    height = _attr_dimension(height_attr)
    if width is None and style:
        width = _style_dimension(STYLE_WIDTH_PATTERN, style)
    if height is None and style:
        height = _style_dimension(STYLE_HEIGHT_PATTERN, style)

    if width == 1 and height == 1:
        return True
    if width is not None and height is not None:
        if width < SMALL_IMAGE_PX and height < SMALL_IMAGE_PX:
            return True
    if invisible:
        return True
    if width == 1 and (height is None or height < SMALL_IMAGE_PX):
        return True
    if height == 1 and (width is None or width < SMALL_IMAGE_PX):
        return True
    return False


def _is_dangerous_url(value: object) -> bool:
    return isinstance(value, str) and _search(DANGEROUS_URL_PATTERN, value) is not None


def is_safe_image_url(url: str | None) -> bool:
    """Only http(s) and data:image/ sources may be restored."""
    if not url or not isinstance(url, str):
        return False
    return _search(SAFE_IMAGE_URL_PATTERN, url.strip()) is not None


def _strip_active_content(soup: BeautifulSoup) -> None:
    for tag in soup.find_all(ACTIVE_CONTENT_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    for tag in soup.find_all(True):
        for attr_name in list(tag.attrs):
            lowered = attr_name.lower()
            if lowered.startswith("on"):
                del tag.attrs[attr_name]
            elif lowered in URL_ATTRIBUTES and _is_dangerous_url(tag.attrs[attr_name]):
                if tag.name == "a" and lowered == "href":
                    tag.attrs[attr_name] = "#"
                else:
                    del tag.attrs[attr_name]
            elif lowered == "style":
                style = str(tag.attrs[attr_name]).lower()
                if "expression(" in style or "javascript:" in style:
                    del tag.attrs[attr_name]

        if tag.name == "a":
            tag.attrs["target"] = "_blank"
            tag.attrs["rel"] = "noopener noreferrer"


def sanitize_html(
    html: str | None,
    *,
    block_remote_images: bool = False,
    block_tracking_pixels: bool = True,
) -> SanitizeResult:
    """Sanitize message HTML and classify its images.

    Args:
        html: Untrusted HTML (server body, parsed MIME part or decrypted text)
        block_remote_images: Replace non-pixel remote images with a placeholder
        block_tracking_pixels: Hide and count tracking pixels

    Returns:
        SanitizeResult with the safe HTML and image counters
    """
    if not html:
        return SanitizeResult(html="")

    soup = BeautifulSoup(html, "html.parser")
    has_blocked = False
    pixel_count = 0
    remote_count = 0

    for img in soup.find_all("img"):
        src = img.get("src")
        if not src:
            continue
        src = str(src).strip()
        if src.lower().startswith("data:"):
            continue
        if _is_dangerous_url(src):
            img.decompose()
            continue
        if not (block_remote_images or block_tracking_pixels):
            continue

        pixel = is_tracking_pixel(img.get("width"), img.get("height"), img.get("style"))
        if pixel and block_tracking_pixels:
            pixel_count += 1
        elif not pixel and block_remote_images:
            remote_count += 1
        else:
            continue

        has_blocked = True
        del img["src"]
        img["data-original-src"] = src
        if not img.get("alt"):
            img["alt"] = TRACKING_PIXEL_ALT if pixel else BLOCKED_IMAGE_ALT
        if pixel:
            img["data-tracking-pixel"] = "true"
            img["style"] = PIXEL_STYLE
        else:
            img["style"] = PLACEHOLDER_STYLE

    _strip_active_content(soup)

    return SanitizeResult(
        html=str(soup),
        has_blocked_images=has_blocked,
        tracking_pixel_count=pixel_count,
        blocked_remote_image_count=remote_count,
    )


def restore_blocked_images(html: str | None, *, include_tracking_pixels: bool = False) -> str:
    """Put blocked image sources back.

    Tracking pixels stay blocked unless ``include_tracking_pixels`` is set.
    Sources that are not http(s) or data:image/ are never restored.
    """
    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")
    restored = 0
    for img in soup.find_all("img", attrs={"data-original-src": True}):
        is_pixel = img.get("data-tracking-pixel") == "true"
        if is_pixel and not include_tracking_pixels:
            continue
        original = str(img["data-original-src"])
        if not is_safe_image_url(original):
            continue
        img["src"] = original.strip()
        del img["data-original-src"]
        img.attrs.pop("data-tracking-pixel", None)
        img.attrs.pop("style", None)
        restored += 1

    logger.debug("blocked_images_restored", count=restored)
    return str(soup)


def extract_text_content(html: str | None) -> str:
    """Plain text of an HTML fragment, blank-line runs collapsed."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(["script", "style", "head", "title"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(BLOCK_TAGS):
        block.append("\n")
    text = soup.get_text()
    try:
        text = BLANK_LINES_PATTERN.sub("\n\n", text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("regex_timeout", step="extract_text_content", text_length=len(text))
    return text.strip()
