"""Agent execution: stream decoding, orchestration and the execution log."""
