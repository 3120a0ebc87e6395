"""Chain access, gas, nonces, execution and the block watcher."""
