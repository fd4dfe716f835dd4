"""nanoclaw: chat transports bridged to a containerised agent."""
