"""Bundled queue processors."""

from batch_queue.processors.echo import EchoProcessor

__all__ = ["EchoProcessor"]
