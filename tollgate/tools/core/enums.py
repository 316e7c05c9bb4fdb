from enum import StrEnum


class Capability(StrEnum):
    """Capability tags a tool declares about itself."""

    READ_FILES = "read_files"
    WRITE_FILES = "write_files"
    EXECUTE_COMMANDS = "execute_commands"
    NETWORK = "network"
    SYSTEM = "system"
    PLANNING = "planning"


# Any of these makes a tool dangerous: it mutates state or leaves the local environment
DANGEROUS_CAPABILITIES = frozenset(
    {
        Capability.WRITE_FILES,
        Capability.EXECUTE_COMMANDS,
        Capability.NETWORK,
        Capability.SYSTEM,
    }
)
