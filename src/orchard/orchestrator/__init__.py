"""Manager agent, endpoint router and worker supervision.

One asyncio event loop owns all shared state: endpoint capacity counters live
in `EndpointRouter`, the issue -> worker map and the priority queue live in
`Manager`. Both are mutated only between await points, so no locking is used.
"""
