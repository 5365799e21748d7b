"""
Core package for shared engine utilities.

Holds configuration, logging, the error taxonomy, the event bus, the generic
state machine and the configurable-operation registry used by every service.
"""
