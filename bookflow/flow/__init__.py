"""Flow-based job orchestration.

A flow is a tree of job nodes: children fan out and run concurrently, and a
parent runs exactly once after every child has completed, consuming their
results in declaration order. A single failed node fails its whole ancestor
chain without running any ancestor executor.

This package knows nothing about books, browsers or LLMs; stage semantics live
in `bookflow.runtime.stages`.
"""
