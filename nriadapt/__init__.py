"""Runtime-side adaptation of Node Resource Interface plugins: data model, plugin handling and result merging."""

__version__ = "0.1.0"