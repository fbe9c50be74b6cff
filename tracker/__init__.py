"""Chapterbell core package.

Modules:
- selector: which titles are due for a check
- sources: source adapters (MangaDex) and the per-source limiter
- diff: new chapters above a title's watermark
- repository: persistence of chapters, titles and subscriptions
- fanout: subscriptions -> notification jobs
- queue: persisted retry queue for check and notification jobs
- pipeline / worker / orchestrator: running the above per scheduling tick
- api: FastAPI trigger and status endpoints
- config: INI parsing and config object
"""
