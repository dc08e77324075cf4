"""
Streaming session engine.

Wraps a tool run in a staged progress protocol: one 0% start event, one
event per stage, then exactly one terminal result or error event.
"""
