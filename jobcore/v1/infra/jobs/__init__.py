"""
Delayed job queue.

Jobs are typed, routed to a fixed queue family, leased by a dispatcher with a
heartbeat and visibility timeout, retried with exponential backoff and
escalated to operators when their attempts run out.
"""
