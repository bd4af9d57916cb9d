"""Resumable benchmark trial harness.

Why threads and not asyncio?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~
A trial is an opaque, blocking call into an external agent (usually a
subprocess that runs for minutes). The harness only needs a bounded number of
those calls in flight, a durable record written after each one, and a way to
stop admitting work on SIGINT. A small ``ThreadPoolExecutor`` gives exactly
that without forcing runner implementations to be async. SQLite writes are
serialized by the store, so the pool never contends on anything but the
runner itself.

Flow: ``planner.plan`` diffs the requested key space against the
``TrialStore``; ``TrialScheduler.run`` executes what is pending and persists
each outcome before its worker takes the next key; ``ProgressReporter``
renders lifecycle events from a bounded channel; ``aggregator.summarize``
reads per-model tallies back from the store.
"""
