from __future__ import annotations

import json
import logging

import pytesseract
import pytest
from PIL import Image

from src.errors import DownloadFailure, ExtractionFailure
from src.models.events import ProcessingResultEvent
from src.services.notifications import ADMIN, LoggingNotificationSink, user_recipient
from src.services.object_storage import LocalObjectStorage, key_from_url
from src.services.results_publisher import RedisResultPublisher
from src.services.text_extraction import TesseractTextExtractor


def test_key_from_url_strips_scheme_and_host():
    assert key_from_url("https://cdn.example.com/documents/ktp.png") == "documents/ktp.png"
    assert key_from_url("/documents/ktp.png") == "documents/ktp.png"
    assert key_from_url("documents/ktp.png") == "documents/ktp.png"


@pytest.mark.asyncio
async def test_local_storage_round_trip_and_root_escape(tmp_path):
    storage = LocalObjectStorage(tmp_path)
    assert await storage.upload("documents/npwp.jpg", b"img") == "documents/npwp.jpg"
    assert await storage.download("https://cdn.example.com/documents/npwp.jpg") == b"img"

    with pytest.raises(DownloadFailure):
        await storage.download("documents/missing.jpg")
    with pytest.raises(DownloadFailure):
        await storage.download("../outside.txt")


@pytest.mark.asyncio
async def test_logging_sink_tags_recipient_kind(caplog):
    sink = LoggingNotificationSink()
    with caplog.at_level(logging.INFO, logger="src.services.notifications"):
        assert await sink.notify(ADMIN, "circuit_open", "breaker opened")
        assert await sink.notify(user_recipient("user-1"), "document_verified", "ok")
    assert [record.getMessage() for record in caplog.records] == ["ADMIN_NOTIFICATION", "USER_NOTIFICATION"]
    assert caplog.records[1].recipient == "user:user-1"


@pytest.mark.asyncio
async def test_redis_publisher_sends_event_on_channel(redis):
    pubsub = redis.pubsub()
    await pubsub.subscribe("test:results")
    await pubsub.get_message(timeout=1)  # subscribe confirmation

    publisher = RedisResultPublisher(redis, "test:results")
    await publisher.publish(
        ProcessingResultEvent(
            document_id="doc-1",
            correlation_id="cid-1",
            success=True,
            gpu_processed=True,
            score=100,
            decision="auto_approve",
            outcome="auto_approved",
            attempts=1,
        )
    )

    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1)
    assert message is not None
    assert json.loads(message["data"])["document_id"] == "doc-1"
    await pubsub.aclose()


def test_tesseract_config_follows_engine_mode():
    assert TesseractTextExtractor(lang="ind", oem=0, psm=6).config == "--oem 0 --psm 6"


@pytest.mark.asyncio
async def test_tesseract_reads_image_with_language_and_config(tmp_path, monkeypatch):
    scan = tmp_path / "ktp.png"
    Image.new("RGB", (8, 8), "white").save(scan)
    calls = []

    def _image_to_string(image, lang=None, config="", timeout=0):
        calls.append((image.size, lang, config, timeout))
        return "NIK : 3171234567890001"

    monkeypatch.setattr(pytesseract.pytesseract, "tesseract_cmd", "tesseract")
    monkeypatch.setattr(pytesseract, "image_to_string", _image_to_string)
    extractor = TesseractTextExtractor(command="/usr/bin/tesseract", lang="ind", oem=0, timeout_seconds=30)

    assert await extractor.extract_text(str(scan)) == "NIK : 3171234567890001"
    assert calls == [((8, 8), "ind", "--oem 0 --psm 3", 30)]
    assert pytesseract.pytesseract.tesseract_cmd == "/usr/bin/tesseract"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        pytesseract.TesseractNotFoundError(),
        pytesseract.TesseractError(1, "Error opening data file ind.traineddata"),
        RuntimeError("Tesseract process timeout"),
    ],
)
async def test_ocr_engine_errors_raise_extraction_failure(tmp_path, monkeypatch, error):
    scan = tmp_path / "npwp.png"
    Image.new("L", (4, 4)).save(scan)

    def _image_to_string(image, **kwargs):
        raise error

    monkeypatch.setattr(pytesseract, "image_to_string", _image_to_string)
    with pytest.raises(ExtractionFailure):
        await TesseractTextExtractor().extract_text(str(scan))


@pytest.mark.asyncio
async def test_unreadable_scan_raises_extraction_failure(tmp_path):
    scan = tmp_path / "broken.png"
    scan.write_bytes(b"not an image")
    with pytest.raises(ExtractionFailure):
        await TesseractTextExtractor().extract_text(str(scan))
