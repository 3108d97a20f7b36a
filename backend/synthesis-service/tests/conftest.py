import os
import sys
import tempfile
from datetime import date
from pathlib import Path

import pytest


SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

# Keep tests hermetic regardless of local shell/.env values.
os.environ["SYNTHESIS_GATEWAY_MODE"] = "http"
os.environ["SYNTHESIS_GATEWAY_BASE_URL"] = "http://model-gateway.invalid"
os.environ["SYNTHESIS_CASE_STORE_BACKEND"] = "memory"
os.environ["SYNTHESIS_RETRIEVAL_MODE"] = "local"
os.environ["SYNTHESIS_SEED_ON_START"] = "true"
os.environ["SYNTHESIS_EXPOSE_ERRORS"] = "true"
os.environ.pop("SYNTHESIS_GUIDELINES_PATH", None)
os.environ.pop("SYNTHESIS_SEED_PATH", None)

_TEST_DATA_DIR = Path(tempfile.gettempdir()) / "synthesis-service-tests"
_TEST_DATA_DIR.mkdir(parents=True, exist_ok=True)
os.environ["SYNTHESIS_LOCAL_DATA_DIR"] = str(_TEST_DATA_DIR)
os.environ["SYNTHESIS_SQLITE_DB_PATH"] = str(_TEST_DATA_DIR / "synthesis.sqlite3")

FIXED_TODAY = date(2026, 10, 19)


class FakeGateway:
    """Records prompts and returns scripted model text."""

    mode = "fake"

    def __init__(self, text="", vision_text="", error=None):
        self.text = text
        self.vision_text = vision_text
        self.error = error
        self.prompts = []
        self.vision_calls = []

    def invoke(self, prompt, config):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.text

    def invoke_vision(self, image_bytes, media_type, prompt, config):
        self.vision_calls.append((len(image_bytes), media_type, prompt))
        if self.error is not None:
            raise self.error
        return self.vision_text


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def seeded_repository():
    from case_repository import InMemoryClinicalRepository
    from config import MOCK_DB_DIR
    from seed_data import seed_repository

    repository = InMemoryClinicalRepository()
    seed_repository(repository, MOCK_DB_DIR / "clinic_seed.json")
    return repository


@pytest.fixture
def make_orchestrator(seeded_repository, fake_gateway):
    from config import ServiceSettings
    from orchestrator import ClinicalOrchestrator

    def _make(gateway=None, knowledge_base_client=None, retrieval_mode="local"):
        settings = ServiceSettings(case_store_backend="memory", retrieval_mode=retrieval_mode)
        return ClinicalOrchestrator(
            settings,
            repository=seeded_repository,
            gateway=gateway or fake_gateway,
            knowledge_base_client=knowledge_base_client,
            clock=lambda: FIXED_TODAY,
        )

    return _make
