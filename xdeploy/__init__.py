"""XDeployment controller.

Long-running reconciliation loop for the ``XDeployment`` workload resource:
 - watches desired state (image, replicas, port, hostname, env)
 - creates/deletes owned child workload units until they match
 - rolls children one at a time when the template changes
 - publishes observed status (ready replicas + conditions)

The implementation is intentionally small so it can be audited and explained.
"""
