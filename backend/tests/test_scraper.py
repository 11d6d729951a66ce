"""Tests for DCE link discovery and local storage."""
import httpx

from tendersniper.services.dce_scraper import DceScraper, find_download_link
from tendersniper.services.dce_storage import LocalStorage, safe_filename

BASE = "https://marches.example.fr/consultation/123"


class TestFindDownloadLink:
    def test_zip_with_download_text_preferred(self):
        html = """
            <a href="/autre.zip">Annexe</a>
            <a href="/dce/complet.zip">Télécharger le DCE</a>
        """
        assert find_download_link(html, BASE) == "https://marches.example.fr/dce/complet.zip"

    def test_strong_phrase_without_zip_extension(self):
        html = '<a href="/download?id=9">Télécharger le dossier</a><a href="/contact">Contact</a>'
        assert find_download_link(html, BASE) == "https://marches.example.fr/download?id=9"

    def test_any_zip_as_last_resort(self):
        html = '<a href="pieces.ZIP?v=2">Pièces jointes</a>'
        assert find_download_link(html, BASE) == "https://marches.example.fr/consultation/pieces.ZIP?v=2"

    def test_nothing_found(self):
        assert find_download_link("<p>Connectez-vous</p>", BASE) is None


class TestDceScraper:
    async def test_direct_archive(self):
        def handler(request):
            return httpx.Response(200, content=b"PK", headers={"content-type": "application/zip"})

        result = await DceScraper(transport=httpx.MockTransport(handler)).resolve(BASE)

        assert result.is_direct_download is True
        assert result.file_url == BASE

    async def test_link_on_page(self):
        def handler(request):
            return httpx.Response(200, html='<a href="/f/dce.zip">DCE</a>')

        result = await DceScraper(transport=httpx.MockTransport(handler)).resolve(BASE)

        assert result.success is True
        assert result.file_url == "https://marches.example.fr/f/dce.zip"

    async def test_landing_page_only(self):
        def handler(request):
            return httpx.Response(200, html="<p>Inscription requise</p>")

        result = await DceScraper(transport=httpx.MockTransport(handler)).resolve(BASE)

        assert result.is_direct_download is False
        assert result.file_url == BASE
        assert result.error is None

    async def test_http_error(self):
        def handler(request):
            return httpx.Response(403)

        result = await DceScraper(transport=httpx.MockTransport(handler)).resolve(BASE)

        assert result.error is not None
        assert result.success is False


class TestLocalStorage:
    def test_safe_filename(self):
        name = safe_filename("Lot 1/Règlement (RC).pdf")
        assert name.endswith(".pdf")
        assert "/" not in name and " " not in name

    def test_distinct_names(self):
        assert safe_filename("RC.pdf") != safe_filename("RC.pdf")

    async def test_upload_writes_file(self, tmp_path):
        storage = LocalStorage(root=str(tmp_path), public_prefix="/dce")

        url = await storage.upload(b"contenu", "RC.pdf")

        assert url.startswith("/dce/")
        stored = tmp_path / url.rsplit("/", 1)[-1]
        assert stored.read_bytes() == b"contenu"
