"""
Pytest configuration and fixtures.
"""

import pytest
import os
import sqlite3
from unittest.mock import patch


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "CALLBACK_URI": "https://test.example.com",
        "PORT": "8080",
        "LOG_LEVEL": "DEBUG",
        "CONNECTION_STRING": "endpoint=https://test-acs.communication.azure.com/;accesskey=dGVzdA==",
        "AZURE_OPENAI_SERVICE_ENDPOINT": "https://test-openai.openai.azure.com/",
        "AZURE_OPENAI_SERVICE_KEY": "test_openai_key",
        "AZURE_OPENAI_DEPLOYMENT_MODEL_NAME": "gpt-4o-realtime-preview",
        "AZURE_OPENAI_DEPLOYMENT_MODEL_NAME2": "gpt-4o",
        "DB_MAX_ATTEMPTS": "3",
        "DB_BACKOFF_BASE_SECONDS": "0",  # No sleeping between retries in tests
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.callbridge.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def sample_pcm_audio():
    """Generate sample PCM audio (silence)."""
    return b"\x00\x00" * 480  # 20ms of silence at 24kHz


@pytest.fixture
def acs_audio_message(sample_pcm_audio):
    """Sample ACS AudioData message."""
    import json
    import base64

    return json.dumps({
        "kind": "AudioData",
        "audioData": {
            "data": base64.b64encode(sample_pcm_audio).decode(),
            "timestamp": "2024-11-01T10:00:00.000Z",
            "participantRawID": "8:acs:caller",
            "silent": False,
        },
    })


@pytest.fixture
def cement_database(tmp_path):
    """SQLite copy of the cement company schema with a few rows."""
    path = tmp_path / "cement.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE clients (
            id INTEGER PRIMARY KEY,
            name TEXT,
            email TEXT,
            montantfactures REAL,
            IsInformed INTEGER,
            IsBlocked INTEGER
        );
        CREATE TABLE factures (
            id INTEGER PRIMARY KEY,
            NumerFacture TEXT,
            MontantFacture REAL,
            DelaiDePaiement INTEGER,
            DateFacturation TEXT,
            DateEcheance TEXT,
            clientId INTEGER REFERENCES clients(id)
        );
        CREATE TABLE ArticleCiments (
            Article_Id INTEGER PRIMARY KEY,
            Id_Site INTEGER,
            Designation TEXT,
            Tarif INTEGER,
            "Disponibilité" INTEGER
        );
        CREATE TABLE Region (
            Region_Id INTEGER PRIMARY KEY,
            Region_Libelle TEXT
        );

        INSERT INTO clients VALUES (1, 'Atlas Construction', 'contact@atlas.ma', 12000.5, 1, 0);
        INSERT INTO factures VALUES (1, 'F-2023-117', 4500, 30, '2023-11-02', '2023-12-02', 1);
        INSERT INTO ArticleCiments VALUES (1, 1, 'Ciment CPJ45', 85, 1);
        INSERT INTO ArticleCiments VALUES (2, 1, 'Ciment CPJ55', 95, 0);
        INSERT INTO Region VALUES (1, 'Casablanca-Settat');
        """
    )
    conn.commit()
    conn.close()
    return f"sqlite+aiosqlite:///{path}"
