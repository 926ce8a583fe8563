from __future__ import annotations

import os

# Settings are imported at module load; these defaults let the test suite run
# without a database, Redis or the network. Values already set by the caller
# or CI take precedence.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")

os.environ.setdefault("POSTGRES_USER", "test")
os.environ.setdefault("POSTGRES_PASSWORD", "test")
os.environ.setdefault("POSTGRES_DB", "test")

os.environ.setdefault("NETWORK_API_URL", "https://network.test")
os.environ.setdefault("FHIR_SERVER_URL", "http://fhir.test")
os.environ.setdefault("SANDBOX_MODE", "false")
os.environ.setdefault("DOC_DOWNLOAD_JITTER_MAX_SEC", "0")
os.environ.setdefault("DOC_CHUNK_DELAY_MAX_SEC", "0")
