import logging

import pytest
import requests

import ipsum_blocker
from ipsum_blocker import CommandResult, CommandRunner


class FakeResponse:
    def __init__(self, text='', status_code=200):
        self.text = text
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")


class FakeSession:
    """Stands in for requests.Session, returning a canned response or raising."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []
        self.closed = False

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    def close(self):
        self.closed = True


class RecordingRunner(CommandRunner):
    """Records every command and fails those matching one of `fail_when`."""

    def __init__(self, fail_when=()):
        self.calls = []
        self.fail_when = [tuple(f) for f in fail_when]

    def run(self, args, stdout_path=None, discard_stderr=False):
        self.calls.append(list(args))
        for prefix in self.fail_when:
            if tuple(args[:len(prefix)]) == prefix:
                return CommandResult(list(args), 1, 'failed')
        return CommandResult(list(args), 0)


class FakeKernel(CommandRunner):
    """Interprets ipset and iptables commands against in-memory state."""

    def __init__(self):
        self.calls = []
        self.sets = {}
        self.rules = {}

    def run(self, args, stdout_path=None, discard_stderr=False):
        self.calls.append(list(args))
        if args[0] == 'ipset':
            code = self._ipset(args[1:], stdout_path)
        elif args[0] == 'iptables':
            code = self._iptables(args[1:])
        else:
            code = CommandRunner.NOT_EXECUTED_RETURNCODE
        return CommandResult(list(args), code)

    def _ipset(self, args, stdout_path):
        exist = '-exist' in args
        words = [a for a in args if a not in ('-quiet', '-exist')]
        command = words[0]
        if command == 'create':
            if words[1] in self.sets and not exist:
                return 1
            self.sets.setdefault(words[1], set())
            return 0
        if command == 'save':
            with open(stdout_path, 'w') as out:
                for name, members in self.sets.items():
                    out.write(f"create {name} hash:ip\n")
                    for member in sorted(members):
                        out.write(f"add {name} {member}\n")
            return 0
        if words[1] not in self.sets:
            return 1
        if command == 'flush':
            self.sets[words[1]].clear()
            return 0
        if command == 'add':
            if words[2] in self.sets[words[1]]:
                return 1
            self.sets[words[1]].add(words[2])
            return 0
        return 1

    def _iptables(self, args):
        action, chain, spec = args[0], args[1], tuple(args[2:])
        rules = self.rules.setdefault(chain, [])
        if action == '-D':
            if spec not in rules:
                return 1
            rules.remove(spec)
            return 0
        if action == '-I':
            rules.insert(0, spec)
            return 0
        return 1


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    for handler in list(ipsum_blocker.logger.handlers):
        ipsum_blocker.logger.removeHandler(handler)
        handler.close()
    ipsum_blocker.logger.setLevel(logging.NOTSET)


@pytest.fixture
def session():
    return FakeSession(FakeResponse("1.2.3.4\n5.6.7.8\n"))


@pytest.fixture
def kernel():
    return FakeKernel()
