# truckdesk/core/dispatch/__init__.py
"""
Dispatch core.

- ``reference``: per-customer job reference numbers (YYDNNN)
- ``capacity``: truck/slot utilization reports and run-list ordering
- ``assignments``: truck ↔ job ↔ date ↔ slot mapping
- ``state_machine``: job and driver status lifecycle
- ``notifications``: notification batches and their fan-out
- ``jobs``: task handlers for the background worker

Nothing in this package talks to a database directly; storage comes in
through the protocols in ``ports``.
"""
