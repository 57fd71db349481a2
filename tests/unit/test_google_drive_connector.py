import httpx
import pytest

from knowledge_service.core.errors import ConnectorError
from knowledge_service.services.connectors.base import SyncableItem
from knowledge_service.services.connectors.google_drive import GoogleDriveSyncEngine, is_text_based
from knowledge_service.services.sync import build_sync_context
from tests.fakes import make_scope

DOC_MIME = "application/vnd.google-apps.document"
FOLDER_MIME = "application/vnd.google-apps.folder"


def _ctx(scope_config):
    return build_sync_context(make_scope(scope_config=scope_config), access_token="drive-token")


def _drive_api(request: httpx.Request) -> httpx.Response:
    assert request.headers["Authorization"] == "Bearer drive-token"
    path = request.url.path
    params = request.url.params
    if path == "/drive/v3/files":
        query = params["q"]
        if "'root' in parents" in query and "pageToken" not in params:
            return httpx.Response(
                200,
                json={
                    "files": [
                        {"id": "doc-1", "name": "Roadmap", "mimeType": DOC_MIME, "modifiedTime": "2026-01-02T10:00:00Z"},
                        {"id": "sub", "name": "Archive", "mimeType": FOLDER_MIME},
                        {"id": "img-1", "name": "Logo", "mimeType": "image/png"},
                    ],
                    "nextPageToken": "page-2",
                },
            )
        if "'root' in parents" in query:
            return httpx.Response(200, json={"files": [{"id": "txt-1", "name": "notes.txt", "mimeType": "text/plain", "md5Checksum": "abc"}]})
        if "'sub' in parents" in query:
            return httpx.Response(200, json={"files": [{"id": "csv-1", "name": "data.csv", "mimeType": "text/csv"}]})
    if path == "/drive/v3/files/pdf-1":
        return httpx.Response(200, json={"id": "pdf-1", "name": "Scan", "mimeType": "application/pdf"})
    if path == "/drive/v3/files/doc-1/export":
        assert params["mimeType"] == "text/plain"
        return httpx.Response(200, text="Exported roadmap text")
    if path == "/drive/v3/files/txt-1":
        assert params["alt"] == "media"
        return httpx.Response(200, text="   ")
    if path == "/drive/v3/files/gone":
        return httpx.Response(404, json={"error": "not found"})
    if path == "/drive/v3/files/busy":
        return httpx.Response(429, json={"error": "rate limited"})
    return httpx.Response(500)


@pytest.fixture()
def engine():
    return GoogleDriveSyncEngine(http_client=httpx.Client(transport=httpx.MockTransport(_drive_api)))


def test_fetch_metadata_walks_folders_and_pages(engine):
    items = engine.fetch_metadata(_ctx({"folder_id": "root", "file_ids": ["pdf-1"]}))

    assert [item.external_id for item in items] == ["doc-1", "csv-1", "txt-1"]
    assert items[0].modified_at is not None
    assert items[2].content_hash == "abc"


def test_fetch_content_exports_google_docs(engine):
    item = SyncableItem(external_id="doc-1", title="Roadmap", mime_type=DOC_MIME)

    content = engine.fetch_content(_ctx({}), item)

    assert content.content == "Exported roadmap text"
    assert content.metadata["source"] == "google_drive"


def test_fetch_content_returns_none_for_blank_files(engine):
    item = SyncableItem(external_id="txt-1", title="notes.txt", mime_type="text/plain")

    assert engine.fetch_content(_ctx({}), item) is None


def test_http_errors_become_typed_connector_errors(engine):
    with pytest.raises(ConnectorError) as not_found:
        engine.fetch_content(_ctx({}), SyncableItem(external_id="gone", title="x", mime_type="text/plain"))
    assert not_found.value.error_code == "C-HTTP-404"
    assert not_found.value.retryable is False

    with pytest.raises(ConnectorError) as throttled:
        engine.fetch_content(_ctx({}), SyncableItem(external_id="busy", title="x", mime_type="text/plain"))
    assert throttled.value.retryable is True


def test_transport_failure_is_retryable():
    def explode(request):
        raise httpx.ConnectError("refused", request=request)

    engine = GoogleDriveSyncEngine(http_client=httpx.Client(transport=httpx.MockTransport(explode)))

    with pytest.raises(ConnectorError) as exc_info:
        engine.fetch_metadata(_ctx({"file_ids": ["a"]}))
    assert exc_info.value.error_code == "C-HTTP-TRANSPORT"
    assert exc_info.value.retryable is True


def test_is_text_based():
    assert is_text_based("text/markdown")
    assert is_text_based(DOC_MIME)
    assert not is_text_based("image/png")
    assert not is_text_based(None)
