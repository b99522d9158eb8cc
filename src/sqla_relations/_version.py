__all__ = ("__version__", "__version_tuple__", "version", "version_tuple")

__version__ = version = "0.1.0"
__version_tuple__ = version_tuple = (0, 1, 0)
