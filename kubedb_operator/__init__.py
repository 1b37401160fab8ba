"""KubeDB lifecycle operator for ManagedDatabase and DormantDatabase resources."""

__version__ = "0.1.0"
