import os

# app.main instruments FastAPI at import time, and whichever test module
# imports it first decides; span tests need the instrumented app.
os.environ.setdefault("OTEL_ENABLED", "true")
