"""Link transport, reply correlation and the interaction loop."""
