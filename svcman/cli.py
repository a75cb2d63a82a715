"""
Command-line interface for svcman.
Starts and stops the daemon and inspects the service configuration.
"""

import argparse
import json
import sys
from typing import Optional

from svcman.config import Config, default_config_path, load_config
from svcman.daemon import start_daemon
from svcman.errors import AlreadyRunning, ConfigError, LockError
from svcman.lock import SingletonGuard, stop_daemon
from svcman.log import setup_logging


class CLI:
    """
    Command-line interface for the svcman service manager.
    """

    def __init__(self):
        """Initialize the CLI with argument parser."""
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        """
        Create and configure the argument parser.

        Returns:
            Configured ArgumentParser instance
        """
        parser = argparse.ArgumentParser(
            prog='svcman',
            description='Lightweight service supervisor with git-backed updates'
        )

        subparsers = parser.add_subparsers(
            dest='command',
            help='Available commands',
            required=True
        )

        # daemon command
        daemon_parser = subparsers.add_parser(
            'daemon',
            help='Manage the daemon'
        )
        actions = daemon_parser.add_mutually_exclusive_group(required=True)
        actions.add_argument(
            '--start',
            action='store_true',
            help='Start the daemon'
        )
        actions.add_argument(
            '--stop',
            action='store_true',
            help='Signal a running daemon to terminate'
        )
        daemon_parser.add_argument(
            '--no-fork',
            action='store_true',
            help='Run the daemon in the foreground instead of detaching'
        )
        daemon_parser.add_argument(
            '--wait',
            action='store_true',
            help='Block until the daemon has exited'
        )
        self._add_config_argument(daemon_parser)

        # test-config command
        test_config_parser = subparsers.add_parser(
            'test-config',
            help='Load and print the configuration without starting anything'
        )
        self._add_config_argument(test_config_parser)

        # service command
        service_parser = subparsers.add_parser(
            'service',
            help='Show the definition of a service'
        )
        service_parser.add_argument(
            'service_name',
            help='Name of the service'
        )
        self._add_config_argument(service_parser)

        return parser

    @staticmethod
    def _add_config_argument(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            '--config',
            default=None,
            help=f'Path to configuration file (default: $SVCMAN_CONFIG or {default_config_path()})'
        )

    def execute(self, args: Optional[list] = None) -> int:
        """
        Execute the CLI with the given arguments.

        Args:
            args: Command-line arguments (defaults to sys.argv[1:])

        Returns:
            Exit code (0 for success, non-zero for error)
        """
        try:
            parsed_args = self.parser.parse_args(args)

            command = parsed_args.command

            if command == 'daemon':
                return self._cmd_daemon(parsed_args)
            elif command == 'test-config':
                return self._cmd_test_config(parsed_args)
            elif command == 'service':
                return self._cmd_service(parsed_args)
            else:
                print(f"Unknown command: {command}", file=sys.stderr)
                return 1

        except SystemExit as e:
            # argparse calls sys.exit() on error or --help
            return e.code if e.code is not None else 0
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    def _cmd_daemon(self, args) -> int:
        """
        Handle daemon command.

        Args:
            args: Parsed command-line arguments

        Returns:
            Exit code (0 for success, non-zero for error)
        """
        if args.stop:
            return self._stop_daemon(args)

        config_path = args.config or default_config_path()
        try:
            return start_daemon(config_path, fork=not args.no_fork, wait=args.wait)
        except AlreadyRunning as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        except LockError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    def _stop_daemon(self, args) -> int:
        try:
            signalled = stop_daemon()
        except LockError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        if not signalled:
            print("Daemon is not running")
            return 0

        print("Sent termination signal to daemon")
        if args.wait:
            SingletonGuard().wait_until_released()
            print("Daemon stopped")
        return 0

    def _cmd_test_config(self, args) -> int:
        """
        Handle test-config command.

        Loads the configuration, prints it as JSON and reports services that
        would fail to start because of their definition.

        Args:
            args: Parsed command-line arguments

        Returns:
            Exit code (0 if the configuration is valid, 1 otherwise)
        """
        config = self._load(args)
        if config is None:
            return 1

        print(json.dumps(config.to_dict(), indent=2))

        errors = 0
        for name, spec in config.services.items():
            try:
                spec.validate(name)
            except ConfigError as e:
                print(f"Error: {e}", file=sys.stderr)
                errors += 1

        return 1 if errors else 0

    def _cmd_service(self, args) -> int:
        """
        Handle service command.

        Prints one service's definition and resolved working directory.

        Args:
            args: Parsed command-line arguments

        Returns:
            Exit code (0 for success, non-zero for error)
        """
        config = self._load(args)
        if config is None:
            return 1

        name = args.service_name
        spec = config.services.get(name)
        if spec is None:
            print(f"Error: Service {name} not found", file=sys.stderr)
            return 1

        try:
            workdir = spec.working_dir(config.root, name)
        except ConfigError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        print(f"Service:     {name}")
        print(f"Enabled:     {'yes' if spec.enabled else 'no'}")
        print(f"Source:      {spec.git_uri or spec.base_dir}")
        print(f"Working dir: {workdir}")
        print(f"Command:     {spec.run_command}")
        if spec.ssh_key_file:
            print(f"SSH key:     ~/.ssh/{spec.ssh_key_file}")
        for key, value in sorted(spec.env.items()):
            print(f"Env:         {key}={value}")
        return 0

    @staticmethod
    def _load(args) -> Optional[Config]:
        config_path = args.config or default_config_path()
        try:
            return load_config(config_path)
        except ConfigError as e:
            print(f"Error: {e}", file=sys.stderr)
            return None


def main():
    """Main entry point for the CLI."""
    setup_logging()
    cli = CLI()
    sys.exit(cli.execute())


if __name__ == '__main__':
    main()
