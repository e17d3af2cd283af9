"""Top-level package for the video-to-receipts pipeline.

A user uploads a video of receipts; a background worker samples its
frames, finds the receipts, reads and classifies each one and stores
reviewable bookkeeping records. The package contains the database
models, Pydantic schemas, the pipeline stages, the job/receipt/export
services and the Dramatiq task that runs a job.

To process jobs locally start Redis and a worker:

```bash
dramatiq receiptscan.worker --processes 1 --threads 4
```

The default configuration uses a local SQLite database stored in
``receiptscan.db``. You can override configuration values using
environment variables or a ``.env`` file at the project root.
"""

__all__: list[str] = []
