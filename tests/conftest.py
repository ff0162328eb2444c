"""Pytest configuration and fixtures."""

import os

import pytest

from tests.fakes.fake_db import (
    FakeChatModel,
    FakeConceptStore,
    FakeEmbeddingService,
    FakeInsightStore,
    FakeJobStore,
    FakeTopicStore,
)


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["SUPABASE_URL"] = "https://test.supabase.co"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-key"
    os.environ["OPENAI_API_KEY"] = "test-openai-key"
    os.environ["INSIGHT_ENGINE_ENV"] = "test"


@pytest.fixture
def insight_store():
    return FakeInsightStore()


@pytest.fixture
def concept_store():
    return FakeConceptStore()


@pytest.fixture
def topic_store():
    return FakeTopicStore()


@pytest.fixture
def job_store():
    return FakeJobStore()


@pytest.fixture
def embeddings():
    return FakeEmbeddingService()


@pytest.fixture
def chat_model():
    return FakeChatModel()
