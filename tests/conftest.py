from __future__ import annotations

import asyncio
from typing import Any, Callable, List, Tuple

import fakeredis
import pytest

from src.config import ReviewWorkflowSettings, WorkerSettings
from src.models.documents import DocumentRecord
from src.services.job_queue import RedisJobQueue
from src.services.locks import RedisDocumentLock
from src.services.metrics import RecordingMetrics
from src.services.persistence import InMemoryDocumentRepository, InMemoryReviewRepository
from src.services.results_publisher import InMemoryResultPublisher

KTP_CLEAR_TEXT = (
    "PROVINSI DKI JAKARTA\n"
    "NIK : 3171234567890123\n"
    "Nama : BUDI SANTOSO\n"
    "Tempat/Tgl Lahir : JAKARTA, 17-08-1990\n"
    "Jenis Kelamin : LAKI-LAKI\n"
    "Alamat : JL MERDEKA NO 10 RT 001 RW 002\n"
    "Agama : ISLAM\n"
    "Status Perkawinan : KAWIN\n"
)

# NIK and name only: no critical field missing but well below auto-approval
KTP_PARTIAL_TEXT = "NIK : 3171234567890123\nNama : BUDI SANTOSO\nAgama : ISLAM\n"

NPWP_TEXT = (
    "KEMENTERIAN KEUANGAN REPUBLIK INDONESIA\n"
    "DIREKTORAT JENDERAL PAJAK\n"
    "NPWP : 01.234.567.8-901.000\n"
    "Nama : PT MAJU BERSAMA\n"
)


class FakeClock:
    """Virtual time; ``wait`` yields once then jumps forward by the timeout."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.current = start
        self.waits: List[float] = []

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds

    async def wait(self, event: asyncio.Event, timeout: float) -> bool:
        await asyncio.sleep(0)
        if event.is_set():
            return True
        self.waits.append(timeout)
        self.current += max(0.0, timeout)
        return False


class BlockingClock(FakeClock):
    """Waits only end when the event is set; time never moves on its own."""

    async def wait(self, event: asyncio.Event, timeout: float) -> bool:
        await event.wait()
        return True


class FakeStorage:
    def __init__(self, data: bytes = b"\x89PNG-fake-image") -> None:
        self.data = data
        self.keys: List[str] = []

    async def download(self, key: str) -> bytes:
        self.keys.append(key)
        return self.data


class FakeExtractor:
    """Returns queued outcomes in order; the last one repeats forever."""

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def extract_text(self, local_path: str) -> str:
        self.calls += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, str, str]] = []

    async def notify(self, recipient: str, notification_type: str, message: str) -> bool:
        self.sent.append((recipient, notification_type, message))
        return True

    def of_type(self, notification_type: str) -> List[Tuple[str, str, str]]:
        return [item for item in self.sent if item[1] == notification_type]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def blocking_clock() -> BlockingClock:
    return BlockingClock()


@pytest.fixture
def redis():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def queue(redis, clock) -> RedisJobQueue:
    return RedisJobQueue(redis, prefix="test:ocr", clock=clock)


@pytest.fixture
def lock(redis) -> RedisDocumentLock:
    return RedisDocumentLock(redis, prefix="test:ocr")


@pytest.fixture
def documents() -> InMemoryDocumentRepository:
    return InMemoryDocumentRepository()


@pytest.fixture
def reviews() -> InMemoryReviewRepository:
    return InMemoryReviewRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def publisher() -> InMemoryResultPublisher:
    return InMemoryResultPublisher()


@pytest.fixture
def metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def worker_settings() -> WorkerSettings:
    return WorkerSettings(concurrency=2, poll_interval_seconds=1.0, max_retries=3, lock_ttl_seconds=60.0)


@pytest.fixture
def review_settings() -> ReviewWorkflowSettings:
    return ReviewWorkflowSettings(poll_interval_seconds=3600.0, max_wait_seconds=168 * 3600.0)


@pytest.fixture
def make_document(documents) -> Callable[..., DocumentRecord]:
    def _make(
        document_id: str,
        *,
        doc_type: str = "KTP",
        user_id: str | None = "user-1",
        status: str = "uploaded",
        file_key: str | None = "documents/ktp.png",
        **fields: Any,
    ) -> DocumentRecord:
        return documents.add(
            DocumentRecord(
                id=document_id,
                type=doc_type,
                user_id=user_id,
                file_key=file_key,
                status=status,
                **fields,
            )
        )

    return _make


@pytest.fixture
def ktp_text() -> str:
    return KTP_CLEAR_TEXT


@pytest.fixture
def ktp_partial_text() -> str:
    return KTP_PARTIAL_TEXT


@pytest.fixture
def npwp_text() -> str:
    return NPWP_TEXT


@pytest.fixture
def runtime_factory(redis, documents, reviews, storage, notifier, publisher, metrics, clock, tmp_path):
    from src.config import AppConfig
    from src.runtime import WorkerRuntime
    from src.services.review_client import LocalReviewServiceClient

    def _factory(*, gpu=None, cpu=None, use_clock=None, **env: Any) -> WorkerRuntime:
        values = {
            "OCR_WORKER_EMBEDDED": False,
            "OCR_GPU_ENABLED": True,
            "OCR_TMP_DIR": str(tmp_path),
            "OCR_GPU_QUEUE_PREFIX": "test:ocr",
            "BULI2_RETRY_QUEUE_KEY": "test:buli2:retry_queue",
            "BULI2_CALLBACK_SECRET": "s3cret",
            **env,
        }
        return WorkerRuntime(
            AppConfig(_env_file=None, **values),
            redis=redis,
            documents=documents,
            reviews=reviews,
            storage=storage,
            gpu_extractor=gpu or FakeExtractor(KTP_CLEAR_TEXT),
            cpu_extractor=cpu or FakeExtractor(KTP_CLEAR_TEXT),
            review_client=LocalReviewServiceClient(),
            notifier=notifier,
            publisher=publisher,
            metrics=metrics,
            clock=use_clock or clock,
            worker_id="worker-test",
        )

    return _factory
