"""
Mermaid diagram engines.

Validation (grammar and rule paths), structural analysis, optimization,
format conversion and the template catalog. Nothing in this package
touches the network; every component is constructed explicitly and can be
instantiated in isolation.
"""
