"""
Workers — process lifecycle for the delivery pipeline.

- ChatPipeline wires backends, runtime, processors and dispatcher from Settings
- ClusterSupervisor keeps N worker processes alive
- `python -m workers` runs the cluster
"""
