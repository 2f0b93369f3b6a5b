"""Pure domain layer: value enums, DTOs and the clock abstraction."""
