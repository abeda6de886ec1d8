from stagegate.state.store import RunStore

__all__ = ["RunStore"]
