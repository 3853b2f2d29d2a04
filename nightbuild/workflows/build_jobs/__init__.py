"""Build job orchestration: safety gate, job owners, step executor and queue dispatch."""
