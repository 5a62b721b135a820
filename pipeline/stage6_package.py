"""Stage 6: Packaging — page files, sitemap and reverse-proxy config into the archive."""
import logging
import re
from datetime import date
from typing import Any
from urllib.parse import urljoin, urlparse

from models.site import SitePage
from pipeline.errors import SitemapDomainInvalid
from pipeline.stage5_render import template_env
from settings import Settings
from utils.site_archive import SiteArchive
from utils.text import strip_xml_specials

logger = logging.getLogger(__name__)

SITEMAP_FILE = "sitemap.xml"
NGINX_FILE = "nginx.conf"

_HOSTNAME = re.compile(
    r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*$",
    re.IGNORECASE,
)


def normalize_base_url(domain: str | None) -> str:
    """``https://host/`` for a user-supplied domain; raises SitemapDomainInvalid."""
    if not domain or not domain.strip():
        raise SitemapDomainInvalid(domain, "No domain given.")
    candidate = domain.strip()
    if not re.match(r"^[a-z][a-z0-9+.-]*://", candidate, re.IGNORECASE):
        candidate = f"https://{candidate}"
    parsed = urlparse(candidate)
    host = parsed.hostname or ""
    if parsed.scheme not in ("http", "https") or not _HOSTNAME.match(host):
        raise SitemapDomainInvalid(domain, "Expected a host name such as example.com.")
    port = f":{parsed.port}" if parsed.port else ""
    return f"{parsed.scheme}://{host}{port}/"


def _collect_images(value: Any, found: list[dict[str, str]]) -> None:
    if isinstance(value, list):
        for item in value:
            _collect_images(item, found)
        return
    if not isinstance(value, dict):
        return
    href = value.get("href")
    if isinstance(href, str) and href and (value.get("type") == "image" or "alt" in value):
        if not href.startswith("data:"):
            found.append({
                "href": href,
                "caption": strip_xml_specials(str(value.get("alt") or value.get("label") or "")),
            })
    for child in value.values():
        if isinstance(child, (dict, list)):
            _collect_images(child, found)


def page_images(page: SitePage) -> list[dict[str, str]]:
    """Every image reference found in the page's block variables, in order, de-duplicated."""
    found: list[dict[str, str]] = []
    for instance in page.instances:
        _collect_images(instance.variables, found)
    unique: dict[str, dict[str, str]] = {}
    for image in found:
        unique.setdefault(image["href"], image)
    return list(unique.values())


def generate_sitemap_xml(pages: list[SitePage], domain: str | None) -> str:
    base_url = normalize_base_url(domain)
    entries = []
    for page in pages:
        loc = base_url if page.path == "/" else urljoin(base_url, page.path.lstrip("/"))
        entries.append({
            "loc": loc,
            "changefreq": "daily" if page.path == "/" else "monthly",
            "priority": "1.0" if page.path == "/" else "0.8",
            "images": [
                {"loc": urljoin(base_url, img["href"]), "caption": img["caption"]}
                for img in page_images(page)
            ],
        })
    return template_env().get_template("sitemap.xml.j2").render(
        entries=entries, lastmod=date.today().isoformat()
    )


def server_name_from_domain(domain: str | None) -> str:
    if not domain or not domain.strip():
        return "_"
    candidate = domain.strip()
    if "://" not in candidate:
        candidate = f"//{candidate}"
    host = urlparse(candidate).hostname or ""
    return host if _HOSTNAME.match(host) else "_"


def generate_nginx_config(domain: str | None, root_dir: str) -> str:
    return template_env().get_template("nginx.conf.j2").render(
        server_name=server_name_from_domain(domain), root_dir=root_dir
    )


def pack_archive(
    archive: SiteArchive,
    pages: list[SitePage],
    domain: str | None,
    settings: Settings,
) -> SiteArchive:
    """Add page documents, sitemap and nginx stanza to ``archive`` (in place)."""
    for page in pages:
        archive.add(page.filename, page.html)

    try:
        archive.add(SITEMAP_FILE, generate_sitemap_xml(pages, domain))
    except SitemapDomainInvalid as exc:
        logger.warning("Skipping %s: %s", SITEMAP_FILE, exc)

    if domain:
        archive.add(NGINX_FILE, generate_nginx_config(domain, settings.nginx_root_dir))

    logger.info("Packed %d pages (%d files total)", len(pages), len(archive))
    return archive
