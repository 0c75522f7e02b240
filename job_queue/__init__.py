"""
Release Queue — Holds staged reply actions until they are due.

- ActionScheduler PUBLISHES delayed, grouped, deduplicated actions
- ReleaseWorker RECEIVES due batches and hands them to the ReleaseConsumer
- Supports Redis (production) and an in-memory backend (dev, tests)
"""
