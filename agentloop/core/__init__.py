"""Turn engine: parsing, history, dispatch, and the turn state machine."""
