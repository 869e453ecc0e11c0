# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors

__version__ = "1.1.0"
