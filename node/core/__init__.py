"""Node-side job execution, load generation, server and monitors."""
