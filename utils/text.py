"""String helpers for page paths, titles and XML-safe captions."""
import re

_TRANSLITERATIONS = (("ä", "ae"), ("ö", "oe"), ("ü", "ue"), ("ß", "ss"))


def slugify(text: str, fallback: str = "page") -> str:
    """Lowercase ``[a-z0-9-]`` slug; runs of anything else collapse to one hyphen."""
    text = text.lower()
    for umlaut, replacement in _TRANSLITERATIONS:
        text = text.replace(umlaut, replacement)
    text = re.sub(r"[\s/_]+", "-", text)
    text = re.sub(r"[^a-z0-9-]", "", text)
    text = re.sub(r"-+", "-", text).strip("-")
    return text or fallback


def normalize_page_path(path: str, title: str, index: int) -> str:
    """Single-level ``/slug`` path. Falls back to the title, then ``/page-<index>``."""
    source = path.strip().strip("/") if path else ""
    if not source:
        source = title
    return "/" + slugify(source, fallback=f"page-{index}")


def normalize_page_title(title: str, path: str) -> str:
    """Title-cased, slash-free, at most 50 characters."""
    if not title:
        title = path.strip("/").replace("-", " ")
    title = re.sub(r"[/\\]", " ", title)
    title = re.sub(r"\s+", " ", title).strip()
    title = re.sub(r"\b\w", lambda m: m.group(0).upper(), title)
    return title[:50].strip()


def strip_xml_specials(text: str) -> str:
    """Drop ``<>&"'`` so the text can be embedded verbatim in XML."""
    return re.sub(r"[<>&\"']", "", text or "")
