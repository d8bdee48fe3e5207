"""Pure domain layer: clock, state machines, policies, and result DTOs.  No I/O."""
