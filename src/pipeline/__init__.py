"""Pipeline controller and run state machine."""
