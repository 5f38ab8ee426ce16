"""kubectl-shaped command surface."""

from kubesim.commands.interpreter import CommandInterpreter, CommandResult
from kubesim.commands.manifests import load_objects
from kubesim.commands.parser import ParsedCommand, parse_command

__all__ = ['CommandInterpreter', 'CommandResult', 'ParsedCommand', 'load_objects', 'parse_command']
