"""Agent routing: session keys, bindings and route resolution."""
