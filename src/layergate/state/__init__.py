from layergate.state.store import RunStore

__all__ = ["RunStore"]
