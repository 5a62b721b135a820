"""Tests for Stage 6 packaging: sitemap, nginx config and archive contents."""
import xml.etree.ElementTree as ET

import pytest

from models.block import BlockInstance
from models.site import SitePage
from pipeline.errors import SitemapDomainInvalid
from pipeline.stage6_package import (
    generate_nginx_config,
    generate_sitemap_xml,
    normalize_base_url,
    pack_archive,
    page_images,
    server_name_from_domain,
)
from utils.site_archive import SiteArchive

_NS = {
    "sm": "http://www.sitemaps.org/schemas/sitemap/0.9",
    "image": "http://www.google.com/schemas/sitemap-image/1.1",
}


def _pages() -> list[SitePage]:
    home = SitePage(
        path="/",
        title="Home",
        html="<html>home</html>",
        instances=[BlockInstance(category="hero", generation_id="hero-0", variables={
            "image": {"href": "images/img_a.png", "alt": 'Fresh "bread" & <rolls>', "preview": "data:x"},
            "items": {"values": [{"photo": {"href": "images/img_b.png", "alt": "Croissant"}}]},
            "link": {"href": "https://example.org", "label": "Partner"},
        })],
    )
    services = SitePage(
        path="/services",
        title="Services",
        html="<html>services</html>",
        instances=[BlockInstance(category="gallery", generation_id="gallery-0", variables={
            "photo": {"type": "image", "href": "https://cdn.example.com/x.png", "label": "CDN"},
        })],
    )
    return [home, services]


# ---------------------------------------------------------------------------
# Domains
# ---------------------------------------------------------------------------

class TestDomains:
    def test_base_url_adds_scheme(self):
        assert normalize_base_url("example.com") == "https://example.com/"
        assert normalize_base_url("http://shop.example.com/path") == "http://shop.example.com/"

    @pytest.mark.parametrize("domain", [None, "", "not a domain", "ftp://example.com", "exa_mple.com"])
    def test_invalid_domains(self, domain):
        with pytest.raises(SitemapDomainInvalid):
            normalize_base_url(domain)

    def test_server_name(self):
        assert server_name_from_domain("https://www.example.com/shop") == "www.example.com"
        assert server_name_from_domain("example.com") == "example.com"
        assert server_name_from_domain(None) == "_"
        assert server_name_from_domain("!!!") == "_"


# ---------------------------------------------------------------------------
# Sitemap
# ---------------------------------------------------------------------------

def test_page_images_scan_nested_variables():
    images = page_images(_pages()[0])
    assert [i["href"] for i in images] == ["images/img_a.png", "images/img_b.png"]
    assert images[0]["caption"] == "Fresh bread  rolls"


def test_sitemap_lists_pages_and_images():
    xml = generate_sitemap_xml(_pages(), "example.com")
    root = ET.fromstring(xml.encode("utf-8"))

    urls = root.findall("sm:url", _NS)
    assert [u.find("sm:loc", _NS).text for u in urls] == [
        "https://example.com/",
        "https://example.com/services",
    ]
    assert urls[0].find("sm:priority", _NS).text == "1.0"
    assert urls[1].find("sm:changefreq", _NS).text == "monthly"

    home_images = [i.find("image:loc", _NS).text for i in urls[0].findall("image:image", _NS)]
    assert home_images == ["https://example.com/images/img_a.png", "https://example.com/images/img_b.png"]
    services_images = [i.find("image:loc", _NS).text for i in urls[1].findall("image:image", _NS)]
    assert services_images == ["https://cdn.example.com/x.png"]


# ---------------------------------------------------------------------------
# nginx + packing
# ---------------------------------------------------------------------------

def test_nginx_config():
    conf = generate_nginx_config("https://example.com", "/srv/site")
    assert "server_name example.com;" in conf
    assert "root /srv/site;" in conf
    assert "try_files $uri $uri/ $uri.html /index.html;" in conf


def test_pack_archive_with_domain(tmp_settings):
    archive = SiteArchive()
    image = archive.add_image(b"png")
    pack_archive(archive, _pages(), "example.com", tmp_settings)

    assert archive.read_text("index.html") == "<html>home</html>"
    assert archive.read_text("services.html") == "<html>services</html>"
    assert "sitemap.xml" in archive
    assert "nginx.conf" in archive
    assert image in archive


def test_pack_archive_without_domain_skips_optional_files(tmp_settings):
    archive = pack_archive(SiteArchive(), _pages(), None, tmp_settings)
    assert sorted(archive.paths) == ["index.html", "services.html"]


def test_pack_archive_invalid_domain_keeps_proxy_config(tmp_settings):
    archive = pack_archive(SiteArchive(), _pages(), "not a domain", tmp_settings)
    assert "sitemap.xml" not in archive
    assert "server_name _;" in archive.read_text("nginx.conf")
