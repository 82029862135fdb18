__all__ = ["nidkg"]
