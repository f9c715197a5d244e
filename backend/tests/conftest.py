import os
import tempfile

# Settings are read at import time; configure before anything imports app.*
_workdir = tempfile.mkdtemp(prefix="support-relay-tests-")

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_workdir}/app.db")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("UPLOAD_DIR", os.path.join(_workdir, "uploads"))
