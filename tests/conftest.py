"""Shared test fixtures for Concierge test suite."""

from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from concierge.classifier import InvoiceRecord
from concierge.config import BrowserConfig, InvoiceConfig
from concierge.fallback import BackendDescriptor, BackendResult
from concierge.invoice import InvoiceOutcome
from concierge.resolver import CandidateElement, CandidateKind
from concierge.transcription import TranscribedAudio, TranscriptionService


class FakeClassifier:
    """Classifier returning canned answers per schema name.

    An answer may be a dict (returned as is), None, an exception instance
    (raised), or a list of those consumed one per call.
    """

    def __init__(self, answers=None):
        self.answers = dict(answers or {})
        self.calls = []

    async def classify(self, schema, prompt):
        self.calls.append((schema.__name__, prompt))
        answer = self.answers.get(schema.__name__)
        if isinstance(answer, list):
            answer = answer.pop(0) if answer else None
        if isinstance(answer, Exception):
            raise answer
        return answer

    def count(self, schema_name):
        return sum(1 for name, _ in self.calls if name == schema_name)


class FakePage:
    """In-memory page environment."""

    def __init__(self, candidates=None, download_bytes=b"%PDF-1.4 fake"):
        self.candidates = dict(candidates or {})
        self.download_bytes = download_bytes
        self.visited = []
        self.fills = []
        self.clicks = []
        self.queries = []
        self.closed = False
        self.close_count = 0
        self.fail_navigation = None
        self.fail_clicks = set()

    async def navigate(self, url):
        if self.fail_navigation is not None:
            raise self.fail_navigation
        self.visited.append(url)

    async def wait_for_load(self):
        return None

    async def query_candidates(self, kind):
        self.queries.append(kind)
        return list(self.candidates.get(kind, []))

    async def fill(self, identifier, value):
        self.fills.append((identifier, value))

    async def click(self, selector):
        if selector in self.fail_clicks:
            from concierge.errors import NavigationFailure

            raise NavigationFailure(f"could not click {selector}")
        self.clicks.append(selector)

    async def wait_for_download(self, trigger, destination):
        await trigger()
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.download_bytes)
        return destination

    async def close(self):
        self.close_count += 1
        self.closed = True


class FakePool:
    """Hands out one FakePage per acquisition."""

    def __init__(self, page):
        self.page = page
        self.acquired = 0
        self.released = 0

    @asynccontextmanager
    async def acquire(self):
        self.acquired += 1
        try:
            yield self.page
        finally:
            self.released += 1
            await self.page.close()


class FakeTransport:
    """Records what the bot sends."""

    def __init__(self, audio_bytes=b"ID3 fake audio"):
        self.messages = []
        self.files = []
        self.downloads = []
        self.audio_bytes = audio_bytes
        self.fail_files = False

    async def send_message(self, conversation_id, text):
        self.messages.append((conversation_id, text))

    async def send_file(self, conversation_id, path, caption=None):
        if self.fail_files:
            raise RuntimeError("upload rejected")
        self.files.append((conversation_id, Path(path).name, Path(path).read_bytes(), caption))

    async def download_attachment(self, attachment, destination):
        self.downloads.append(attachment.name)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.audio_bytes)
        return destination

    def texts(self, conversation_id=None):
        return [t for cid, t in self.messages if conversation_id is None or cid == conversation_id]


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def element(identifier, text="", kind=CandidateKind.INPUT, markup=None):
    return CandidateElement(
        identifier=identifier,
        visible_text=text,
        raw_markup=markup or f'<x id="{identifier}">{text}</x>',
        kind=kind,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def portal_page():
    """A login page with two inputs, a login button, an invoice link and a table."""
    return FakePage(
        candidates={
            CandidateKind.INPUT: [element("email"), element("pass")],
            CandidateKind.BUTTON: [element("ref:button-0", "Ingresar", CandidateKind.BUTTON)],
            CandidateKind.ANCHOR: [
                element("ref:anchor-0", "Facturas", CandidateKind.ANCHOR),
                element("ref:anchor-1", "", CandidateKind.ANCHOR, '<a title="F-001">pdf</a>'),
            ],
            CandidateKind.TABLE: [
                element("ref:table-0", "Factura F-001 10/05 $100", CandidateKind.TABLE, "<table>...</table>"),
            ],
        }
    )


@pytest.fixture
def portal_answers():
    """Classifier answers for a successful portal run."""
    return {
        "ElementChoice": [{"elementId": "email"}, {"elementId": "pass"}, {"elementId": "ref:anchor-1"}],
        "ButtonChoice": [{"buttonText": "Ingresar"}, {"buttonText": "Facturas"}],
        "InvoiceRecord": {"expirationDate": "10/05/2026", "amount": "$100", "facturaId": "F-001"},
    }


@pytest.fixture
def browser_config():
    return BrowserConfig(
        step_timeout=2.0,
        navigation_timeout=2.0,
        download_timeout=2.0,
        render_timeout=0.05,
        render_poll_interval=0.01,
        render_poll_max_interval=0.01,
    )


@pytest.fixture
def invoice_config(tmp_path):
    return InvoiceConfig(portal_url="https://portal.example/login", download_dir=str(tmp_path / "downloads"))


class StubPipeline:
    """Invoice pipeline returning a fixed record, optionally with a PDF."""

    def __init__(self, with_pdf=True, error=None):
        self.with_pdf = with_pdf
        self.error = error
        self.runs = []

    async def run(self, credentials, url=None, download=None, destination_dir=None, token=None):
        self.runs.append((credentials, download, destination_dir))
        if self.error is not None:
            raise self.error
        record = InvoiceRecord.model_validate(
            {"expirationDate": "10/05/2026", "amount": "$100", "facturaId": "F-001"}
        )
        artifact = None
        if self.with_pdf:
            artifact = Path(destination_dir) / "F-001.pdf"
            artifact.write_bytes(b"%PDF-1.4 fake")
        return InvoiceOutcome(record=record, artifact=artifact)


def transcription_service(text="hola mundo", segments=None, error=None, post_processor=None):
    """TranscriptionService over a single canned backend."""
    calls = []

    async def invoke(request):
        calls.append(request)
        if error is not None:
            return BackendResult.failure(error)
        return BackendResult.success(TranscribedAudio(text, segments))

    service = TranscriptionService(
        [BackendDescriptor(name="groq-whisper", priority=0, invoke=invoke)],
        post_processor=post_processor,
    )
    service.calls = calls
    return service
