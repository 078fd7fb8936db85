#!/usr/bin/python3
"""
IPsum Blocker

This module downloads the IPsum list of malicious IP addresses, loads it into an
ipset and installs an iptables rule that drops inbound traffic from the set.
"""

import argparse
import logging
import os
import subprocess  # nosec B404 - subprocess usage is intentional and controlled
import sys
import time
from pathlib import Path
from typing import List, NamedTuple, Optional, Union
import requests


class IpsumBlockerConfig:
    """Configuration constants for the ipsum blocker."""

    # Blocklist source
    IPSUM_LIST_URL = 'https://raw.githubusercontent.com/stamparm/ipsum/master/levels/3.txt'
    USER_AGENT = 'Ipsum-Blocker/1.0'
    REQUEST_TIMEOUT = 30

    # ipset configuration
    IPSET_BIN = 'ipset'
    IPSET_NAME = 'ipsum'
    IPSET_TYPE = 'hash:ip'
    IPSET_SAVE_PATH = Path('/etc/ipset.conf')

    # iptables configuration
    IPTABLES_BIN = 'iptables'
    IPTABLES_CHAIN = 'INPUT'
    IPTABLES_TARGET = 'DROP'

    LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class IpsumBlockerError(Exception):
    """Base exception for ipsum blocker errors."""
    pass


class FetchError(IpsumBlockerError):
    """Exception raised when the blocklist cannot be downloaded."""
    pass


class IptablesError(IpsumBlockerError):
    """Exception raised when the iptables rule cannot be installed."""
    pass


logger = logging.getLogger(__name__)


class CommandResult(NamedTuple):
    """Outcome of one external command."""

    args: List[str]
    returncode: int
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs external commands and reports their outcome without raising."""

    NOT_EXECUTED_RETURNCODE = 127

    def run(self, args: List[str], stdout_path: Optional[Path] = None,
            discard_stderr: bool = False) -> CommandResult:
        """
        Run a command to completion.

        Args:
            args: The command and its arguments
            stdout_path: If set, stdout is written to this file (truncated first)
            discard_stderr: If True, stderr is sent to /dev/null

        Returns:
            CommandResult with the exit status; 127 if the command could not be started
        """
        logger.debug(f"Executing: {' '.join(args)}")
        stderr = subprocess.DEVNULL if discard_stderr else subprocess.PIPE
        try:
            if stdout_path is not None:
                with open(stdout_path, 'w') as out:
                    process = subprocess.run(  # nosec B603 - controlled input, no shell
                        args, check=False, stdout=out, stderr=stderr, text=True
                    )
            else:
                process = subprocess.run(  # nosec B603 - controlled input, no shell
                    args, check=False, stdout=subprocess.DEVNULL, stderr=stderr, text=True
                )
        except OSError as e:
            logger.debug(f"Could not execute {' '.join(args)}: {e}")
            return CommandResult(args, self.NOT_EXECUTED_RETURNCODE, str(e))

        result = CommandResult(args, process.returncode, (process.stderr or '').strip())
        if not result.ok:
            logger.debug(f"Command exited with {result.returncode}: {' '.join(args)}")
        return result


class DryRunCommandRunner(CommandRunner):
    """Logs commands instead of running them."""

    def run(self, args: List[str], stdout_path: Optional[Path] = None,
            discard_stderr: bool = False) -> CommandResult:
        command = ' '.join(args)
        if stdout_path is not None:
            command += f" > {stdout_path}"
        logger.info(f"DRY RUN: Would execute: {command}")
        return CommandResult(args, 0)


class BlocklistFetcher:
    """Downloads the IPsum blocklist."""

    def __init__(self, url: str, session: requests.Session, timeout: Union[int, float]):
        self.url = url
        self.session = session
        self.timeout = timeout

    def fetch(self) -> List[str]:
        """
        Fetch the blocklist and split it into addresses.

        Returns:
            The addresses in the order they appear in the list

        Raises:
            FetchError: If the request fails or the body holds no addresses
        """
        try:
            logger.debug(f"Fetching URL: {self.url}")
            start_time = time.time()

            response = self.session.get(self.url, timeout=self.timeout)
            response.raise_for_status()

            elapsed = time.time() - start_time
            logger.debug(
                f"Successfully fetched {self.url}, "
                f"response size: {len(response.text)} bytes, "
                f"elapsed: {elapsed:.2f}s"
            )
        except requests.RequestException as e:
            raise FetchError(f"Error fetching {self.url}: {e}") from e

        addresses = self.parse(response.text)
        if not addresses:
            raise FetchError(f"No addresses found in response from {self.url}")

        logger.debug(f"Blocklist contains {len(addresses)} entries")
        return addresses

    @staticmethod
    def parse(body: str) -> List[str]:
        """Split a newline separated body into entries, skipping blank lines."""
        addresses = []
        for line in body.split('\n'):
            line = line.rstrip('\r\n')
            if line:
                addresses.append(line)
        return addresses


class IpsetManager:
    """Thin wrapper around the ipset binary."""

    def __init__(self, runner: CommandRunner, ipset_bin: str = IpsumBlockerConfig.IPSET_BIN,
                 set_type: str = IpsumBlockerConfig.IPSET_TYPE):
        self.runner = runner
        self.ipset_bin = ipset_bin
        self.set_type = set_type

    def create(self, name: str) -> CommandResult:
        """Create the set, succeeding if it already exists."""
        return self.runner.run([self.ipset_bin, '-quiet', '-exist', 'create', name, self.set_type])

    def flush(self, name: str) -> CommandResult:
        return self.runner.run([self.ipset_bin, '-quiet', 'flush', name])

    def add(self, name: str, address: str) -> CommandResult:
        return self.runner.run([self.ipset_bin, '-quiet', 'add', name, address])

    def populate(self, name: str, addresses: List[str]) -> int:
        """
        Add every address to the set, one command per address.

        A failed addition does not stop the remaining ones.

        Returns:
            The number of additions that failed
        """
        failed = 0
        for address in addresses:
            if not self.add(name, address).ok:
                failed += 1
        return failed

    def persist(self, destination: Path) -> CommandResult:
        """Write the state of all sets to destination, overwriting it."""
        return self.runner.run([self.ipset_bin, 'save'], stdout_path=destination)


class IptablesManager:
    """Manages the rule that drops traffic matching an ipset."""

    def __init__(self, runner: CommandRunner, iptables_bin: str = IpsumBlockerConfig.IPTABLES_BIN,
                 chain: str = IpsumBlockerConfig.IPTABLES_CHAIN,
                 target: str = IpsumBlockerConfig.IPTABLES_TARGET):
        self.runner = runner
        self.iptables_bin = iptables_bin
        self.chain = chain
        self.target = target

    def _rule_spec(self, set_name: str) -> List[str]:
        return ['-m', 'set', '--match-set', set_name, 'src', '-j', self.target]

    def remove_rule(self, set_name: str) -> CommandResult:
        """Delete an existing rule for the set; a missing rule is reported as a failed result."""
        return self.runner.run(
            [self.iptables_bin, '-D', self.chain] + self._rule_spec(set_name),
            discard_stderr=True,
        )

    def insert_rule(self, set_name: str) -> CommandResult:
        """Insert the rule at the top of the chain."""
        return self.runner.run([self.iptables_bin, '-I', self.chain] + self._rule_spec(set_name))


class IpsumBlocker:
    """Fetches the blocklist and applies it to ipset and iptables."""

    def __init__(self, save: bool = False, save_path: Optional[Path] = None,
                 dry_run: bool = False, config: Optional[IpsumBlockerConfig] = None,
                 runner: Optional[CommandRunner] = None,
                 session: Optional[requests.Session] = None):
        """
        Initialize the blocker.

        Args:
            save: If True, persist the ipset configuration after populating it
            save_path: Destination for the saved configuration
            dry_run: If True, log commands instead of running them
            config: Configuration constants (defaults to IpsumBlockerConfig)
            runner: Command runner, overrides the one selected by dry_run
            session: HTTP session used to download the list
        """
        self.config = config or IpsumBlockerConfig()
        self.save = save
        self.save_path = Path(save_path) if save_path else self.config.IPSET_SAVE_PATH
        self.dry_run = dry_run

        if runner is None:
            runner = DryRunCommandRunner() if dry_run else CommandRunner()
        self.runner = runner
        self.session = session or self._create_session()

        self.fetcher = BlocklistFetcher(self.config.IPSUM_LIST_URL, self.session,
                                        self.config.REQUEST_TIMEOUT)
        self.ipset = IpsetManager(self.runner, self.config.IPSET_BIN, self.config.IPSET_TYPE)
        self.iptables = IptablesManager(self.runner, self.config.IPTABLES_BIN,
                                        self.config.IPTABLES_CHAIN, self.config.IPTABLES_TARGET)

    def _create_session(self) -> requests.Session:
        """Create a configured requests session."""
        session = requests.Session()
        session.headers.update({'User-Agent': self.config.USER_AGENT})
        return session

    def _get_addresses_to_block(self) -> List[str]:
        logger.info("   (1/1) Downloading ipsum blocklist from Github")
        return self.fetcher.fetch()

    def _setup_ipset(self, addresses: List[str]) -> None:
        name = self.config.IPSET_NAME
        steps = 4 if self.save else 3

        logger.info(f"   (1/{steps}) Creating ipset \"{name}\"")
        if not self.ipset.create(name).ok:
            logger.debug(f"Creating ipset {name} failed, continuing")

        logger.info(f"   (2/{steps}) Flushing old values")
        if not self.ipset.flush(name).ok:
            logger.debug(f"Flushing ipset {name} failed, continuing")

        logger.info(f"   (3/{steps}) Adding new IPs to the set")
        failed = self.ipset.populate(name, addresses)
        logger.debug(f"Added {len(addresses) - failed} of {len(addresses)} addresses to {name}")

        if self.save:
            logger.info(f"   (4/{steps}) Saving ipset configuration to {self.save_path}")
            if not self.ipset.persist(self.save_path).ok:
                logger.debug(f"Saving ipset configuration to {self.save_path} failed, continuing")

    def _setup_iptables(self) -> None:
        name = self.config.IPSET_NAME

        logger.info(f"   (1/2) Dropping existing Iptable rules for ipset \"{name}\"")
        if not self.iptables.remove_rule(name).ok:
            logger.debug(f"No existing rule for ipset {name} was removed")

        logger.info(f"   (2/2) Recreating Iptable rules for ipset \"{name}\"")
        result = self.iptables.insert_rule(name)
        if not result.ok:
            detail = f": {result.stderr}" if result.stderr else ''
            raise IptablesError(
                f"Failed to insert iptables rule for ipset {name} "
                f"(exit code {result.returncode}){detail}"
            )

    def run(self) -> None:
        """Main execution method."""
        logger.info(":: Starting ipsum blocker process")
        if self.dry_run:
            logger.info("=== DRY RUN MODE - No changes will be made ===")

        try:
            logger.info(":: Fetching new block list")
            addresses = self._get_addresses_to_block()

            logger.info(":: Setting up Ipset")
            self._setup_ipset(addresses)

            logger.info(":: Updating Iptables")
            self._setup_iptables()
        except IpsumBlockerError as e:
            logger.error(f"Fatal error: {e}")
            raise
        finally:
            self.session.close()

        logger.info(":: Completed successfully")


def setup_logging(quiet: bool = False, verbose: bool = False,
                  log_file: Optional[str] = None) -> None:
    """Configure the module logger for console output and an optional log file."""
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter('%(message)s'))
    logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(IpsumBlockerConfig.LOG_FORMAT))
        logger.addHandler(file_handler)

    logger.setLevel(level)


def is_root() -> bool:
    """Check whether the process has an effective UID of 0."""
    return os.geteuid() == 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ipsum-blocker',
        description='Block IPs from the IPsum threat list with ipset and iptables',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                          # Download the list and apply it
  %(prog)s --save                   # Also save the ipset configuration
  %(prog)s --quiet                  # Only print errors
  %(prog)s --dry-run --verbose      # Show the commands that would run
        """
    )
    output = parser.add_mutually_exclusive_group()
    output.add_argument(
        '-q', '--quiet',
        action='store_true',
        help='Do not display any output except errors'
    )
    output.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose (debug) logging'
    )
    parser.add_argument(
        '-s', '--save',
        action='store_true',
        help=f'Save the ipset configuration after updating it '
             f'(default path: {IpsumBlockerConfig.IPSET_SAVE_PATH})'
    )
    parser.add_argument(
        '--save-path',
        type=Path,
        help='Path to write the ipset configuration to when --save is given'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show what would be done without making changes'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        help='Also write timestamped log messages to this file'
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(quiet=args.quiet, verbose=args.verbose, log_file=args.log_file)

    if not args.dry_run and not is_root():
        logger.error(f":: Permissions error. You must run {parser.prog} as root.")
        return 1

    try:
        blocker = IpsumBlocker(
            save=args.save,
            save_path=args.save_path,
            dry_run=args.dry_run
        )
        blocker.run()
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except IpsumBlockerError:
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
