"""
Tool dispatch layer.

Registers the diagram operations as tools, validates their input and
exposes them over JSON-RPC.
"""
