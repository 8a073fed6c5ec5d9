"""Task dispatch harness: find pending tasks, claim them, hand them to an agent.

Scheduling model
~~~~~~~~~~~~~~~~
Two trigger sources (a periodic timer and a marker file watched for mtime
changes) run in daemon threads and only ever call
``DispatchScheduler.request_scan``. Accepting a request moves the scheduler
from idle to scanning under a lock and places the request in a capacity-one
channel; the scan loop in the main thread takes it and runs the scan. A
trigger seen while a scan is pending or running is dropped rather than queued,
because the next scan rediscovers any task that is still pending.

Hand-off is fire-and-forget. Once a task is claimed and its instructions are
accepted by the runner, the harness is done with it. A dispatch that fails
after the claim leaves the task active with no agent working on it; nothing
rolls the claim back, and the failure is logged with the task URL so an
operator can reset it.
"""
