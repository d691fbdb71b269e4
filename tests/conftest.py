import os
import tempfile

# database.py builds its engine from settings at import time.
os.environ.setdefault("BUDGET_DATA_DIR", tempfile.mkdtemp(prefix="budget-tests-"))
os.environ["BUDGET_TIMEZONE"] = "Australia/Perth"
