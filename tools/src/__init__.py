"""Helper scripts: config materialiser, port waiter, health probes."""
