import re
import base64
import hashlib
import os

import pytest

import commitsig
from commitsig import PublicKey, ValidationError

from typing import Callable, Dict, Iterable, List, Optional, Tuple

SAMPLE_HEADERS = """tree 9bedf67800b2923982bdf60c89c57ce6cf2d9a1c
parent 0c7c4bd7d4b1f8a2ea8e5f0d58eb3d1b0d2f6c11
author Test User <test@example.com> 1700000000 +0000
committer Test User <test@example.com> 1700000000 +0000"""

SAMPLE_BODY = """
Add the frobnicator

Signed-off-by: Test User <test@example.com>
"""


@pytest.fixture(autouse=True)
def clear_keycache() -> None:
    commitsig.KEYCACHE.clear()


@pytest.fixture
def unsigned_commit() -> str:
    """A commit object without any signature header."""
    return SAMPLE_HEADERS + '\n' + SAMPLE_BODY


def make_signed_commit(sigtype: str, siglines: List[str]) -> str:
    """Embed signature lines into a commit using git's continuation format."""
    keyword = 'gpgsig' if sigtype == commitsig.SIG_PGP else 'sshsig'
    hdr = [keyword + ' ' + siglines[0]] + [' ' + x for x in siglines[1:]]
    return SAMPLE_HEADERS + '\n' + '\n'.join(hdr) + '\n' + SAMPLE_BODY


def expected_payload() -> str:
    """What every signed sample commit was signed over."""
    return SAMPLE_HEADERS + '\n\n' + SAMPLE_BODY


def _digest(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def make_pgp_keydata(keyid: str, uids: Iterable[str]) -> str:
    """Fake armored key understood by the fake gpg helpers below."""
    lines = ['-----BEGIN PGP PUBLIC KEY BLOCK-----', '', 'X-Keyid: %s' % keyid]
    lines += ['X-Uid: %s' % uid for uid in uids]
    lines.append('-----END PGP PUBLIC KEY BLOCK-----')
    return '\n'.join(lines) + '\n'


def make_pgp_signature(keyid: str, payload: str) -> List[str]:
    """Fake armored signature, bound to the payload and the signing key id."""
    return [
        '-----BEGIN PGP SIGNATURE-----',
        '',
        'keyid=%s' % keyid,
        'digest=%s' % _digest(payload.encode()),
        '-----END PGP SIGNATURE-----',
    ]


def _fake_keyinfo(keydata: bytes) -> Tuple[List[str], List[str]]:
    text = keydata.decode()
    keyids = re.findall(r'^X-Keyid: (\S+)$', text, flags=re.M)
    uids = re.findall(r'^X-Uid: (.+)$', text, flags=re.M)
    return keyids, uids


def _fake_signing_keyid(sigdata: bytes) -> str:
    match = re.search(rb'^keyid=(\S+)$', sigdata, flags=re.M)
    if not match:
        raise ValidationError('Could not parse OpenPGP signature')
    return match.group(1).decode()


@pytest.fixture
def fake_gpg(monkeypatch: pytest.MonkeyPatch) -> List[Tuple[bytes, bytes, bytes]]:
    """Replace gpg with helpers that check the fake keys and signatures.

    Returns the list of verification calls made.
    """
    calls: List[Tuple[bytes, bytes, bytes]] = list()

    def fake_verify(payload: bytes, sigdata: bytes, pubkey: bytes) -> Tuple[str, str]:
        calls.append((payload, sigdata, pubkey))
        keyid = _fake_signing_keyid(sigdata)
        if keyid.encode() not in pubkey:
            raise ValidationError('Failed to validate PGP signature')
        if b'digest=' + _digest(payload).encode() not in sigdata:
            raise ValidationError('Failed to validate PGP signature')
        return keyid, '1700000000'

    monkeypatch.setattr(PublicKey, '_get_openpgp_keyinfo', _fake_keyinfo)
    monkeypatch.setattr(commitsig, '_get_openpgp_signing_keyid', _fake_signing_keyid)
    monkeypatch.setattr(commitsig, '_verify_openpgp', fake_verify)
    return calls


def make_ssh_keydata(comment: Optional[str] = None, seed: int = 1) -> str:
    """Build a syntactically valid ssh-ed25519 public key line."""
    keytype = b'ssh-ed25519'
    rawkey = hashlib.sha256(b'seed-%d' % seed).digest()
    blob = len(keytype).to_bytes(4, 'big') + keytype + len(rawkey).to_bytes(4, 'big') + rawkey
    line = 'ssh-ed25519 %s' % base64.b64encode(blob).decode()
    if comment:
        line += ' ' + comment
    return line + '\n'


def make_ssh_signature(keydata: str, payload: str) -> List[str]:
    """Fake armored SSH signature, bound to the payload and one key."""
    return [
        '-----BEGIN SSH SIGNATURE-----',
        'key=%s' % keydata.split()[1],
        'digest=%s' % _digest(payload.encode()),
        '-----END SSH SIGNATURE-----',
    ]


class FakeSshKeygen:
    """Stand-in for ``ssh-keygen -Y verify`` checking the fake SSH signatures."""

    calls: List[Dict[str, object]]

    def __init__(self) -> None:
        self.calls = list()

    def __call__(self, cmdargs: List[str], stdin: Optional[bytes] = None) -> Tuple[int, bytes, bytes]:
        signers = cmdargs[cmdargs.index('-f') + 1]
        sigfile = cmdargs[cmdargs.index('-s') + 1]
        with open(signers, 'r') as fh:
            signer = fh.read()
        with open(sigfile, 'rb') as fh:
            sigdata = fh.read()
        keyb64 = signer.split()[-1]
        assert stdin is not None
        matched = (b'key=' + keyb64.encode() in sigdata
                   and b'digest=' + _digest(stdin).encode() in sigdata
                   and cmdargs[cmdargs.index('-n') + 1] == 'git')
        self.calls.append({
            'signers': signers,
            'sigfile': sigfile,
            'signers_existed': os.path.exists(signers),
            'namespace': cmdargs[cmdargs.index('-n') + 1],
            'matched': matched,
        })
        if matched:
            return 0, b'Good "git" signature', b''
        return 255, b'', b'Could not verify signature.'


@pytest.fixture
def fake_sshkeygen(monkeypatch: pytest.MonkeyPatch) -> FakeSshKeygen:
    fake = FakeSshKeygen()
    monkeypatch.setattr(commitsig, 'sshk_run_command', fake)
    return fake


@pytest.fixture
def commit_store(monkeypatch: pytest.MonkeyPatch) -> Dict[str, str]:
    """Serve commit objects from a dict instead of git."""
    store: Dict[str, str] = dict()

    def fake_get_commit_object(commitid: str, gitdir: Optional[str] = None) -> str:
        if commitid not in store:
            raise RuntimeError('Could not read commit %s: fatal: Not a valid object name' % commitid)
        return store[commitid]

    monkeypatch.setattr(commitsig, 'get_commit_object', fake_get_commit_object)
    return store


@pytest.fixture
def git_responses(monkeypatch: pytest.MonkeyPatch) -> Callable[[Dict[str, Tuple[int, bytes, bytes]]], List[List[str]]]:
    """Script git_run_command replies by subcommand name."""
    def install(responses: Dict[str, Tuple[int, bytes, bytes]]) -> List[List[str]]:
        seen: List[List[str]] = list()

        def fake_git(gitdir: Optional[str], args: List[str], stdin: Optional[bytes] = None,
                     env: Optional[Dict[str, str]] = None) -> Tuple[int, bytes, bytes]:
            seen.append(args)
            return responses[args[0]]

        monkeypatch.setattr(commitsig, 'git_run_command', fake_git)
        return seen

    return install


class Samples:
    """Sample builders handed to tests through the ``samples`` fixture."""

    headers = SAMPLE_HEADERS
    body = SAMPLE_BODY
    signed_commit = staticmethod(make_signed_commit)
    payload = staticmethod(expected_payload)
    pgp_keydata = staticmethod(make_pgp_keydata)
    pgp_signature = staticmethod(make_pgp_signature)
    ssh_keydata = staticmethod(make_ssh_keydata)
    ssh_signature = staticmethod(make_ssh_signature)


@pytest.fixture
def samples() -> Samples:
    return Samples()
