from quartet.state.store import StateStore, StateStoreError

__all__ = ["StateStore", "StateStoreError"]
