"""Service descriptors, dependency ordering, process manager and health probes.

The descriptor table is built once from StackConfig; nothing here keeps
state between runs. Service status is always derived live from the
process manager.
"""
