# -*- coding: utf-8 -*-
#
# Copyright (C) 2026 by the commitsig contributors
# SPDX-License-Identifier: MIT-0
#
import sys
import os
import re

import argparse
import hashlib
import base64
import binascii
import json
import subprocess
import logging
import tempfile

from typing import Optional, List, Tuple, Dict, Union, Iterable, NamedTuple, Set

GitConfigType = Dict[str, Union[str, List[str]]]

logger: logging.Logger = logging.getLogger(__name__)

# Overridable via [commitsig] parameters
GPGBIN: Optional[str] = None
SSHKBIN: Optional[str] = None
TIMEOUT: Optional[float] = None

# Hardcoded defaults
PGPSIG_HDR = 'gpgsig'
SSHSIG_HDR = 'sshsig'
PGPKEY_MARKER = 'BEGIN PGP PUBLIC KEY BLOCK'
SSH_NAMESPACE = 'git'
SSH_PRINCIPAL = 'commitsig@local'
DEFAULT_IDENTITY = 'unknown'
DEFAULT_BASE = 'main'

# Signature and key kinds
SIG_PGP = 'openpgp'
SIG_SSH = 'openssh'
SIG_LABELS = {SIG_PGP: 'GPG', SIG_SSH: 'SSH'}

SSH_KEYTYPES: Set[str] = {
    'ssh-ed25519',
    'ssh-rsa',
    'ssh-dss',
    'ecdsa-sha2-nistp256',
    'ecdsa-sha2-nistp384',
    'ecdsa-sha2-nistp521',
    'sk-ssh-ed25519@openssh.com',
    'sk-ecdsa-sha2-nistp256@openssh.com',
}

# Commit parser states
ST_SCANNING = 0
ST_CONTINUATION = 1
ST_DONE = 2

# Result and severity levels
RES_VALID = 0
RES_NOSIG = 4
RES_NOKEY = 8
RES_NOMATCH = 12
RES_ERROR = 16
RES_BADSIG = 32

# Imported keyrings, keyed by armored key data
KEYCACHE: Dict[bytes, bytes] = dict()
# Quick cache for config settings
CONFIGCACHE: Dict[str, GitConfigType] = dict()

# My version
__VERSION__ = '0.1.0'


class Error(Exception):
    """Base exception for commitsig errors.

    Args:
        message: Error description.
        errors: Optional list of detailed error messages.
    """

    errors: Optional[List[str]]

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors

    def __str__(self) -> str:
        s = super().__str__()
        if self.errors:
            s = '%s: (%s)' % (s, ', '.join(self.errors))
        return s


class ConfigurationError(Error):
    """Raised when configuration or trusted key material is invalid."""


class ValidationError(Error):
    """Raised when signature validation fails."""


class NoKeyError(ValidationError):
    """Raised when the OpenPGP signing key is not among the trusted keys."""


class NoMatchError(ValidationError):
    """Raised when none of the trusted OpenSSH keys validates the signature."""


class VerificationOutcome(NamedTuple):
    """Result of checking a single commit.

    Attributes:
        commit: Commit identifier as passed in.
        result: One of the RES_* result codes.
        sigtype: Signature kind found in the commit, or None if unsigned.
        signer: Identity of the trusted key that verified the signature.
        errors: Human-readable failure details.
    """

    commit: str
    result: int
    sigtype: Optional[str]
    signer: Optional[str]
    errors: List[str]

    @property
    def verified(self) -> bool:
        return self.result == RES_VALID


class CommitObject:
    """Raw git commit object with an optional embedded signature.

    Splits the commit into the payload that was signed and the signature
    carried in its ``gpgsig`` or ``sshsig`` header. The payload is the
    original record with the whole signature header (header line plus its
    space-prefixed continuation lines) replaced by one empty line.

    Args:
        rawdata: Commit object as printed by ``git cat-file commit``.

    Attributes:
        lines: Raw lines of the record.
        payload: Signed payload.
        signature: Signature with continuation prefixes removed.
        sigtype: ``'openpgp'``, ``'openssh'`` or None when unsigned.
    """

    lines: List[str]
    payload: str
    signature: str
    sigtype: Optional[str]

    def __init__(self, rawdata: str):
        self.lines = list()
        self.payload = rawdata
        self.signature = ''
        self.sigtype = None

        self.load_from_string(rawdata)

    @property
    def signed(self) -> bool:
        return self.sigtype is not None

    @classmethod
    def from_bytes(cls, rawdata: bytes) -> 'CommitObject':
        """Create from raw bytes, keeping undecodable bytes intact.

        Args:
            rawdata: Commit object bytes.
        """
        return cls(rawdata.decode('utf-8', errors='surrogateescape'))

    @staticmethod
    def _match_header(line: str) -> Optional[Tuple[str, str]]:
        for keyword, sigtype in ((PGPSIG_HDR, SIG_PGP), (SSHSIG_HDR, SIG_SSH)):
            if not line.startswith(keyword):
                continue
            rest = line[len(keyword):]
            if not rest:
                return sigtype, ''
            if rest[0] == ' ':
                return sigtype, rest[1:]
        return None

    def load_from_string(self, rawdata: str) -> None:
        """Parse a commit record into payload and signature.

        Never raises: a record without a signature header is simply
        unsigned and its payload is the record itself.

        Args:
            rawdata: Commit object text.
        """
        self.lines = rawdata.split('\n')
        payload: List[str] = list()
        siglines: List[str] = list()
        sigtype = None
        state = ST_SCANNING

        for line in self.lines:
            if state == ST_CONTINUATION:
                if line.startswith(' '):
                    siglines.append(line[1:])
                    continue
                # First non-continuation line closes the block and is regular payload
                state = ST_DONE
            elif state == ST_SCANNING:
                found = CommitObject._match_header(line)
                if found is not None:
                    sigtype, inline = found
                    if inline:
                        siglines.append(inline)
                    payload.append('')
                    state = ST_CONTINUATION
                    continue
            payload.append(line)

        self.sigtype = sigtype
        self.signature = '\n'.join(siglines)
        self.payload = '\n'.join(payload)

    def payload_as_bytes(self) -> bytes:
        return self.payload.encode('utf-8', errors='surrogateescape')

    def signature_as_bytes(self) -> bytes:
        return self.signature.encode('utf-8', errors='surrogateescape')


def parse_commit_object(rawdata: str) -> Tuple[str, str, Optional[str]]:
    """Split a commit record into (payload, signature, sigtype).

    Args:
        rawdata: Commit object text.

    Returns:
        Tuple of signed payload, signature and signature kind (None if unsigned).
    """
    cobj = CommitObject(rawdata)
    return cobj.payload, cobj.signature, cobj.sigtype


def _read_ssh_string(blob: bytes, offset: int) -> Tuple[bytes, int]:
    if len(blob) - offset < 4:
        raise ValueError('truncated SSH key blob')
    length = int.from_bytes(blob[offset:offset + 4], 'big')
    start = offset + 4
    end = start + length
    if end > len(blob):
        raise ValueError('invalid SSH string length')
    return blob[start:end], end


def _unescape_colons(value: str) -> str:
    # gpg escapes ':' and non-printables in --with-colons output as \xNN
    return re.sub(r'\\x([0-9a-fA-F]{2})', lambda m: chr(int(m.group(1), 16)), value)


class PublicKey:
    """A trusted public key.

    OpenPGP keys are listed with gpg to learn their key ids and user ids;
    they are registered under every user id. OpenSSH keys are parsed from
    their one-line ``keytype base64 [comment]`` form and registered under
    their comment.

    Args:
        kind: Either ``'openpgp'`` or ``'openssh'``.
        keydata: Raw public key text (one key).

    Raises:
        ConfigurationError: If the key data cannot be parsed.
    """

    kind: str
    keydata: str
    identities: List[str]
    keyids: Set[str]
    keytype: Optional[str]
    keyb64: Optional[str]
    comment: Optional[str]
    fingerprint: str

    def __init__(self, kind: str, keydata: str):
        if kind not in (SIG_PGP, SIG_SSH):
            raise ConfigurationError('Unknown key kind: %s' % kind)
        self.kind = kind
        self.keydata = keydata
        self.identities = list()
        self.keyids = set()
        self.keytype = None
        self.keyb64 = None
        self.comment = None
        self.fingerprint = ''

        if kind == SIG_PGP:
            self._load_openpgp()
        else:
            self._load_openssh()

    def __repr__(self) -> str:
        return '<PublicKey %s %s>' % (self.kind, self.fingerprint)

    def _load_openpgp(self) -> None:
        keyids, uids = PublicKey._get_openpgp_keyinfo(self.keydata.encode())
        if not keyids:
            raise ConfigurationError('No OpenPGP key found in key data')
        self.keyids = set(keyids)
        # Primary fingerprint if gpg gave us one, else the primary key id
        self.fingerprint = next((x for x in keyids if len(x) == 40), keyids[0])
        self.identities = uids

    def _load_openssh(self) -> None:
        chunks = self.keydata.strip().split(None, 2)
        if len(chunks) < 2:
            raise ConfigurationError('Not a valid OpenSSH public key: %s' % self.keydata.strip())
        keytype = chunks[0]
        if keytype not in SSH_KEYTYPES:
            raise ConfigurationError('Unsupported OpenSSH key type: %s' % keytype)
        try:
            blob = base64.b64decode(chunks[1], validate=True)
            wiretype, offset = _read_ssh_string(blob, 0)
        except (binascii.Error, ValueError) as ex:
            raise ConfigurationError('Could not decode OpenSSH public key: %s' % ex)
        if wiretype != keytype.encode():
            raise ConfigurationError('Key type mismatch: %s declared, %s encoded'
                                     % (keytype, wiretype.decode(errors='replace')))
        if keytype == 'ssh-ed25519':
            try:
                rawkey, _ = _read_ssh_string(blob, offset)
            except ValueError as ex:
                raise ConfigurationError('Could not decode ed25519 public key: %s' % ex)
            PublicKey._check_ed25519(rawkey)

        self.keytype = keytype
        self.keyb64 = chunks[1]
        if len(chunks) > 2:
            self.comment = chunks[2].strip()
        else:
            self.comment = ''
        self.identities = [self.comment or DEFAULT_IDENTITY]
        self.fingerprint = 'SHA256:' + base64.b64encode(hashlib.sha256(blob).digest()).decode().rstrip('=')

    @staticmethod
    def _check_ed25519(rawkey: bytes) -> None:
        try:
            from nacl.signing import VerifyKey
        except ModuleNotFoundError:
            raise RuntimeError('This operation requires PyNaCl libraries')

        try:
            VerifyKey(rawkey)
        except ValueError as ex:
            raise ConfigurationError('Invalid ed25519 public key: %s' % ex)

    @staticmethod
    def _get_openpgp_keyinfo(keydata: bytes) -> Tuple[List[str], List[str]]:
        with tempfile.TemporaryDirectory(suffix='.commitsig.gnupg') as td:
            gpgargs = ['--homedir', td, '--with-colons', '--import-options', 'show-only', '--import']
            try:
                ecode, out, err = gpg_run_command(gpgargs, stdin=keydata)
            except (OSError, subprocess.SubprocessError) as ex:
                raise ConfigurationError('Could not run gpg to read OpenPGP public key: %s' % ex)
        if ecode > 0:
            raise ConfigurationError('Could not read OpenPGP public key',
                                     errors=err.decode(errors='replace').strip().split('\n'))
        keyids: List[str] = list()
        uids: List[str] = list()
        for line in out.decode(errors='replace').split('\n'):
            fields = line.split(':')
            if fields[0] in ('pub', 'sub') and len(fields) > 4 and fields[4]:
                keyids.append(fields[4].upper())
            elif fields[0] == 'fpr' and len(fields) > 9 and fields[9]:
                keyids.append(fields[9].upper())
            elif fields[0] == 'uid' and len(fields) > 9 and fields[9]:
                uids.append(_unescape_colons(fields[9]))
        return keyids, uids

    def has_keyid(self, keyid: str) -> bool:
        """Check whether this key (or one of its subkeys) has the given id.

        Args:
            keyid: Long key id or fingerprint, hex.
        """
        keyid = keyid.upper()
        if keyid in self.keyids:
            return True
        # Long key ids are the tail of v4 fingerprints
        return any(x.endswith(keyid) or keyid.endswith(x) for x in self.keyids if len(x) >= 16)

    def as_allowed_signer(self) -> str:
        """Format as a single ssh-keygen allowed-signers line."""
        if self.kind != SIG_SSH:
            raise RuntimeError('Only OpenSSH keys can be used as allowed signers')
        return '%s namespaces="%s" %s %s\n' % (SSH_PRINCIPAL, SSH_NAMESPACE, self.keytype, self.keyb64)


def load_public_keys(keydata: str) -> List[PublicKey]:
    """Parse key file contents into public keys.

    Key data containing an OpenPGP public key block is one OpenPGP key.
    Anything else is read as OpenSSH public keys, one per non-blank line,
    with ``#`` comment lines ignored.

    Args:
        keydata: Contents of one key file.

    Returns:
        List of parsed keys.

    Raises:
        ConfigurationError: If the data is neither format.
    """
    if PGPKEY_MARKER in keydata:
        return [PublicKey(SIG_PGP, keydata)]

    pkeys = list()
    for line in keydata.split('\n'):
        if not line.strip() or line.lstrip().startswith('#'):
            continue
        pkeys.append(PublicKey(SIG_SSH, line))
    if not pkeys:
        raise ConfigurationError('No OpenPGP or OpenSSH public key found')
    return pkeys


class KeyRegistry:
    """Trusted public keys indexed by identity.

    One identity may own several keys of either kind, and an OpenPGP key
    with several user ids is listed under each of them. Identity and key
    insertion order is preserved and drives the search order.
    """

    keys: Dict[str, List[PublicKey]]

    def __init__(self) -> None:
        self.keys = dict()

    def __len__(self) -> int:
        return len(self.keys)

    def add_key(self, pkey: PublicKey) -> None:
        if not pkey.identities:
            logger.debug('Key %s has no identities and will never be used', pkey.fingerprint)
        for identity in pkey.identities:
            self.keys.setdefault(identity, list()).append(pkey)

    def load_keydata(self, keydata: str) -> List[PublicKey]:
        """Parse key file contents and register every key found.

        Args:
            keydata: Contents of one key file.

        Raises:
            ConfigurationError: If the data is neither an OpenPGP nor an OpenSSH key.
        """
        pkeys = load_public_keys(keydata)
        for pkey in pkeys:
            logger.debug('Loaded %s key %s for %s', pkey.kind, pkey.fingerprint, ', '.join(pkey.identities))
            self.add_key(pkey)
        return pkeys

    @classmethod
    def from_keydata(cls, keydatas: Iterable[str]) -> 'KeyRegistry':
        """Build a registry from the contents of several key files.

        Args:
            keydatas: Contents of each key file.

        Raises:
            ConfigurationError: If any of them fails to parse.
        """
        registry = cls()
        for keydata in keydatas:
            registry.load_keydata(keydata)
        return registry

    def identities(self) -> List[str]:
        return list(self.keys.keys())

    def get_keys(self, identity: str, kind: Optional[str] = None) -> List[PublicKey]:
        return [x for x in self.keys.get(identity, list()) if kind is None or x.kind == kind]

    def iter_keys(self, kind: str) -> List[Tuple[str, PublicKey]]:
        """List (identity, key) pairs of one kind in search order."""
        found = list()
        for identity, pkeys in self.keys.items():
            for pkey in pkeys:
                if pkey.kind == kind:
                    found.append((identity, pkey))
        return found

    def find_pgp_key(self, keyid: str) -> Optional[Tuple[str, PublicKey]]:
        """Find the first OpenPGP key carrying the given key id.

        Args:
            keyid: Long key id or fingerprint.

        Returns:
            Tuple of (identity, key), or None if no key matches.
        """
        for identity, pkey in self.iter_keys(SIG_PGP):
            if pkey.has_keyid(keyid):
                return identity, pkey
        return None


build_registry = KeyRegistry.from_keydata


def _check_gpg_status(status: bytes) -> Tuple[bool, bool, str, str]:
    good = False
    valid = False
    signtime = ''
    signkey = ''

    logger.debug('GNUPG status:\n\t%s', status.decode(errors='replace').strip().replace('\n', '\n\t'))
    if re.search(rb'^\[GNUPG:] GOODSIG ([0-9A-F]+)\s+(.*)$', status, flags=re.M):
        good = True
    if (vs_matches := re.search(rb'^\[GNUPG:] VALIDSIG ([0-9A-F]+) (\d{4}-\d{2}-\d{2}) (\d+)', status, flags=re.M)):
        valid = True
        signkey = vs_matches.groups()[0].decode()
        signtime = vs_matches.groups()[2].decode()

    return good, valid, signkey, signtime


def _get_openpgp_signing_keyid(sigdata: bytes) -> str:
    with tempfile.TemporaryDirectory(suffix='.commitsig.gnupg') as td:
        ecode, out, err = gpg_run_command(['--homedir', td, '--list-packets'], stdin=sigdata)
    keyids = re.findall(rb'^:signature packet: algo \d+, keyid ([0-9A-Fa-f]+)', out, flags=re.M)
    if not keyids:
        raise ValidationError('Could not parse OpenPGP signature',
                              errors=err.decode(errors='replace').strip().split('\n'))
    if len(keyids) > 1:
        logger.debug('Signature has %s signers, only checking the first', len(keyids))
    return keyids[0].decode().upper()


def _verify_openpgp(payload: bytes, sigdata: bytes, pubkey: bytes) -> Tuple[str, str]:
    global KEYCACHE
    with tempfile.TemporaryDirectory(suffix='.commitsig.gnupg') as td:
        keyringargs = ['--homedir', td, '--no-default-keyring', '--keyring', 'pub']
        if pubkey in KEYCACHE:
            logger.debug('Reusing cached keyring')
            with open(os.path.join(td, 'pub'), 'wb') as kfh:
                kfh.write(KEYCACHE[pubkey])
        else:
            logger.debug('Importing into new keyring')
            gpgargs = keyringargs + ['--status-fd=1', '--import']
            ecode, out, err = gpg_run_command(gpgargs, stdin=pubkey)
            # look for IMPORT_OK
            if out.find(b'[GNUPG:] IMPORT_OK') < 0:
                raise ValidationError('Could not import GnuPG public key')
            with open(os.path.join(td, 'pub'), 'rb') as kfh:
                KEYCACHE[pubkey] = kfh.read()

        spath = os.path.join(td, 'sigdata')
        with open(spath, 'wb') as sfh:
            sfh.write(sigdata)
        gpgargs = keyringargs + ['--status-fd=2', '--verify', spath, '-']
        ecode, out, err = gpg_run_command(gpgargs, stdin=payload)

    if ecode > 0:
        if err.find(b'[GNUPG:] NO_PUBKEY ') >= 0:
            raise NoKeyError('No matching key found')
        raise ValidationError('Failed to validate PGP signature')

    good, valid, signkey, signtime = _check_gpg_status(err)
    if good and valid:
        return signkey, signtime

    raise ValidationError('Failed to validate PGP signature')


def _validate_openpgp(payload: bytes, sigdata: bytes, registry: KeyRegistry) -> str:
    keyid = _get_openpgp_signing_keyid(sigdata)
    found = registry.find_pgp_key(keyid)
    if found is None:
        raise NoKeyError('No public key found for key ID %s' % keyid)
    identity, pkey = found
    logger.debug('Key ID %s belongs to %s', keyid, identity)
    signkey, signtime = _verify_openpgp(payload, sigdata, pkey.keydata.encode())
    logger.debug('Good signature from %s, key %s, made at %s', identity, signkey, signtime)
    return identity


def _validate_openssh(payload: bytes, sigdata: bytes, registry: KeyRegistry) -> str:
    candidates = registry.iter_keys(SIG_SSH)
    if not candidates:
        raise NoMatchError('No trusted OpenSSH keys to check against')

    with tempfile.TemporaryDirectory(suffix='.commitsig.ssh') as td:
        spath = os.path.join(td, 'sigdata')
        with open(spath, 'wb') as sfh:
            sfh.write(sigdata)
            if not sigdata.endswith(b'\n'):
                sfh.write(b'\n')

        for identity, pkey in candidates:
            with tempfile.NamedTemporaryFile(mode='w', dir=td, prefix='signers.') as kfh:
                kfh.write(pkey.as_allowed_signer())
                kfh.flush()
                sshkargs = ['-Y', 'verify', '-n', SSH_NAMESPACE, '-I', SSH_PRINCIPAL, '-f', kfh.name, '-s', spath]
                try:
                    ecode, out, err = sshk_run_command(sshkargs, payload)
                except (OSError, subprocess.SubprocessError) as ex:
                    logger.debug('Running ssh-keygen failed for %s: %s', pkey.fingerprint, ex)
                    continue
            if ecode == 0:
                logger.debug('Signature matches %s key %s', identity, pkey.fingerprint)
                return identity
            logger.debug('No match with %s key %s', identity, pkey.fingerprint)

    raise NoMatchError('None of %s trusted OpenSSH keys validated the signature' % len(candidates))


def verify_signature(payload: str,
                     signature: str,
                     sigtype: Optional[str],
                     registry: KeyRegistry) -> Tuple[int, Optional[str], List[str]]:
    """Check a signed payload against the trusted keys.

    Never raises: every failure is reported as a result code.

    Args:
        payload: Signed payload, as produced by :class:`CommitObject`.
        signature: Embedded signature.
        sigtype: ``'openpgp'``, ``'openssh'`` or None.
        registry: Trusted keys.

    Returns:
        Tuple of (result_code, signer_identity, errors).
    """
    if sigtype is None:
        return RES_NOSIG, None, ['no signature found']

    try:
        bpayload = payload.encode('utf-8', errors='surrogateescape')
        bsigdata = signature.encode('utf-8', errors='surrogateescape')
        if sigtype == SIG_PGP:
            signer = _validate_openpgp(bpayload, bsigdata, registry)
        elif sigtype == SIG_SSH:
            signer = _validate_openssh(bpayload, bsigdata, registry)
        else:
            return RES_ERROR, None, ['unknown signature type: %s' % sigtype]
    except NoKeyError as ex:
        return RES_NOKEY, None, [str(ex)]
    except NoMatchError as ex:
        return RES_NOMATCH, None, [str(ex)]
    except ValidationError as ex:
        return RES_BADSIG, None, [str(ex)]
    except (OSError, subprocess.SubprocessError) as ex:
        return RES_ERROR, None, ['failed to run verification tool: %s' % ex]
    except Exception as ex:
        logger.debug('Unexpected failure while verifying %s signature', sigtype, exc_info=True)
        return RES_ERROR, None, ['unexpected error: %s' % ex]

    return RES_VALID, signer, list()


def validate_commit(commitid: str, registry: KeyRegistry, gitdir: Optional[str] = None) -> VerificationOutcome:
    """Fetch, parse and verify a single commit.

    Args:
        commitid: Commit identifier.
        registry: Trusted keys.
        gitdir: Optional path to the git directory.
    """
    try:
        rawdata = get_commit_object(commitid, gitdir=gitdir)
    except (RuntimeError, OSError, subprocess.SubprocessError) as ex:
        return VerificationOutcome(commitid, RES_ERROR, None, None, [str(ex)])

    cobj = CommitObject(rawdata)
    result, signer, errors = verify_signature(cobj.payload, cobj.signature, cobj.sigtype, registry)
    return VerificationOutcome(commitid, result, cobj.sigtype, signer, errors)


def validate_commits(commitids: Iterable[str],
                     registry: KeyRegistry,
                     gitdir: Optional[str] = None) -> Tuple[bool, List[VerificationOutcome]]:
    """Verify every commit, in order, without stopping at failures.

    Args:
        commitids: Commit identifiers.
        registry: Trusted keys.
        gitdir: Optional path to the git directory.

    Returns:
        Tuple of (all_verified, outcomes), one outcome per commit.
    """
    all_verified = True
    outcomes: List[VerificationOutcome] = list()
    for commitid in commitids:
        outcome = validate_commit(commitid, registry, gitdir=gitdir)
        outcomes.append(outcome)
        if outcome.verified:
            logger.info('Commit %s %s signature verified.', commitid, SIG_LABELS.get(outcome.sigtype, ''))
            continue

        all_verified = False
        if outcome.result == RES_NOSIG:
            logger.error('Commit %s is not signed.', commitid)
        elif outcome.sigtype is None:
            logger.error('Commit %s could not be checked: %s', commitid, '; '.join(outcome.errors))
        else:
            logger.error('Commit %s %s signature verification failed.', commitid, SIG_LABELS[outcome.sigtype])
            for error in outcome.errors:
                logger.debug('  %s', error)

    return all_verified, outcomes


def _run_command(cmdargs: List[str],
                 stdin: Optional[bytes] = None,
                 env: Optional[Dict[str, str]] = None) -> Tuple[int, bytes, bytes]:
    logger.debug('Running %s', ' '.join(cmdargs))
    cp = subprocess.run(cmdargs, input=stdin, env=env, capture_output=True, text=False, timeout=TIMEOUT)
    logger.debug('Completed %s', repr(cp))
    return cp.returncode, cp.stdout, cp.stderr


def git_run_command(gitdir: Optional[str],
                    args: List[str],
                    stdin: Optional[bytes] = None,
                    env: Optional[Dict[str, str]] = None) -> Tuple[int, bytes, bytes]:
    if gitdir:
        args = ['git', '--git-dir', gitdir, '--no-pager'] + args
    else:
        args = ['git', '--no-pager'] + args
    return _run_command(args, stdin=stdin, env=env)


def gpg_run_command(cmdargs: List[str], stdin: Optional[bytes] = None) -> Tuple[int, bytes, bytes]:
    gpgbin, _ = set_bin_paths(None)
    cmdargs = [gpgbin, '--batch', '--no-auto-key-retrieve', '--no-auto-check-trustdb'] + cmdargs
    return _run_command(cmdargs, stdin)


def sshk_run_command(cmdargs: List[str], stdin: Optional[bytes] = None) -> Tuple[int, bytes, bytes]:
    _, sshkbin = set_bin_paths(None)
    cmdargs = [sshkbin] + cmdargs
    return _run_command(cmdargs, stdin)


def get_commit_object(commitid: str, gitdir: Optional[str] = None) -> str:
    """Read a raw commit object from the repository.

    Args:
        commitid: Commit identifier (anything ``git cat-file`` accepts).
        gitdir: Optional path to the git directory.

    Raises:
        RuntimeError: If git cannot read the commit.
    """
    ecode, out, err = git_run_command(gitdir, ['cat-file', 'commit', commitid])
    if ecode > 0:
        raise RuntimeError('Could not read commit %s: %s' % (commitid, err.decode(errors='replace').strip()))
    return out.decode('utf-8', errors='surrogateescape')


def get_commit_list(basebranch: str = DEFAULT_BASE,
                    path: Optional[str] = None,
                    gitdir: Optional[str] = None) -> List[str]:
    """List commits on HEAD that are not on the base branch.

    Args:
        basebranch: Branch or ref to compare against.
        path: Optional path; only commits touching it are listed.
        gitdir: Optional path to the git directory.

    Raises:
        RuntimeError: If git fails.
    """
    ecode, out, err = git_run_command(gitdir, ['merge-base', 'HEAD', basebranch])
    if ecode > 0:
        raise RuntimeError('Could not find merge-base of HEAD and %s: %s'
                           % (basebranch, err.decode(errors='replace').strip()))
    mergebase = out.decode().strip()
    if path:
        args = ['log', '--pretty=format:%H', '%s..HEAD' % mergebase, '--', path]
    else:
        args = ['rev-list', '%s..HEAD' % mergebase]
    ecode, out, err = git_run_command(gitdir, args)
    if ecode > 0:
        raise RuntimeError('Could not list commits: %s' % err.decode(errors='replace').strip())
    return [x.strip() for x in out.decode().split('\n') if x.strip()]


def parse_commit_list(value: str) -> List[str]:
    """Parse a list of commit ids given as a JSON array or separated by whitespace/commas.

    Raises:
        ConfigurationError: If a JSON value is not a list of strings.
    """
    value = value.strip()
    if value.startswith('['):
        try:
            commits = json.loads(value)
        except ValueError as ex:
            raise ConfigurationError('Invalid commit list: %s' % ex)
        if not isinstance(commits, list) or not all(isinstance(x, str) for x in commits):
            raise ConfigurationError('Commit list must be a JSON array of strings')
        return [x.strip() for x in commits if x.strip()]
    return [x for x in re.split(r'[\s,]+', value) if x]


def load_key_files(paths: Iterable[str]) -> List[str]:
    """Read the contents of each trusted key file.

    Raises:
        ConfigurationError: If a file cannot be read.
    """
    keydatas = list()
    for path in paths:
        fullpath = os.path.expanduser(path)
        if '$' in fullpath:
            fullpath = os.path.expandvars(fullpath)
        try:
            with open(fullpath, 'r', encoding='utf-8') as fh:
                keydatas.append(fh.read())
        except (OSError, UnicodeDecodeError) as ex:
            raise ConfigurationError('Could not read key file %s: %s' % (path, ex))
        logger.debug('Read key file %s', fullpath)
    return keydatas


def get_config_from_git(regexp: str,
                        section: Optional[str] = None,
                        defaults: Optional[GitConfigType] = None,
                        multivals: Optional[List[str]] = None) -> GitConfigType:
    if multivals is None:
        multivals = list()

    args = ['config', '-z', '--get-regexp', regexp]
    _, bout, _ = git_run_command(None, args)
    if defaults is None:
        defaults = dict()

    if not len(bout):
        return defaults

    gitconfig = defaults
    out = bout.decode()

    for line in out.split('\x00'):
        if not line:
            continue
        try:
            key, value = line.split('\n', 1)
            chunks = key.split('.')
            # Drop the starting part
            chunks.pop(0)
            cfgkey = chunks.pop(-1).lower()
            if len(chunks):
                if not section:
                    # Ignore it
                    continue
                # We're in a subsection
                sname = '.'.join(chunks)
                if sname != section:
                    # Not our section
                    continue
            elif section:
                # We want config from a subsection specifically
                continue

            if cfgkey in multivals:
                if cfgkey not in gitconfig:
                    gitconfig[cfgkey] = list()
                elif isinstance(gitconfig[cfgkey], str):
                    gitconfig[cfgkey] = [gitconfig[cfgkey]]  # type: ignore[list-item]
                # We've made sure this is a list
                gitconfig[cfgkey].append(value)  # type: ignore[union-attr]
            else:
                gitconfig[cfgkey] = value
        except ValueError:
            logger.debug('Ignoring git config entry %s', line)

    return gitconfig


def set_bin_paths(config: Optional[GitConfigType]) -> Tuple[str, str]:
    global GPGBIN, SSHKBIN
    if GPGBIN is None:
        if config and config.get('gpg-bin'):
            _gpgbin = config.get('gpg-bin')
            assert isinstance(_gpgbin, str), 'gpg-bin must be a string'
            GPGBIN = _gpgbin
        elif (_gpgbin := get_config_from_git(r'gpg\..*').get('program')) is not None:
            assert isinstance(_gpgbin, str), 'gpg program must be a string'
            GPGBIN = _gpgbin
        else:
            GPGBIN = 'gpg'
    if SSHKBIN is None:
        if config and config.get('ssh-keygen-bin'):
            _sshkbin = config.get('ssh-keygen-bin')
            assert isinstance(_sshkbin, str), 'ssh-keygen-bin must be a string'
            SSHKBIN = _sshkbin
        elif (_sshkbin := get_config_from_git(r'gpg\..*', section='ssh').get('program')) is not None:
            assert isinstance(_sshkbin, str), 'program must be a string'
            SSHKBIN = _sshkbin
        else:
            SSHKBIN = 'ssh-keygen'
    return GPGBIN, SSHKBIN


def set_timeout(config: GitConfigType) -> Optional[float]:
    global TIMEOUT
    value = config.get('timeout')
    if not value:
        return TIMEOUT
    if not isinstance(value, str):
        raise ConfigurationError('timeout must be a single value')
    try:
        TIMEOUT = float(value)
    except ValueError:
        raise ConfigurationError('Invalid timeout: %s' % value)
    if TIMEOUT <= 0:
        raise ConfigurationError('timeout must be positive, got %s' % value)
    return TIMEOUT


def get_main_config(section: Optional[str] = None) -> GitConfigType:
    """Load commitsig configuration from git config.

    Args:
        section: Optional subsection name for commitsig config.
            If None, loads base commitsig.* settings.

    Returns:
        Configuration dictionary. Results are cached per section.
    """
    global CONFIGCACHE
    if section:
        csection = section
    else:
        csection = 'default'
    if csection in CONFIGCACHE:
        return CONFIGCACHE[csection]
    config = get_config_from_git(r'commitsig\..*', section=section, multivals=['keyfile'])
    set_bin_paths(config)
    set_timeout(config)
    logger.debug('config: %s', config)
    CONFIGCACHE[csection] = config
    return config


class GithubFormatter(logging.Formatter):
    """Formatter emitting GitHub Actions error annotations."""

    def format(self, record: logging.LogRecord) -> str:
        msg = super().format(record)
        if record.levelno >= logging.ERROR:
            return '::error::%s' % msg
        return msg


def _config_list(config: GitConfigType, key: str) -> List[str]:
    value = config.get(key, list())
    if isinstance(value, str):
        return [value]
    return list(value)


def _load_registry(cmdargs: argparse.Namespace, config: GitConfigType) -> KeyRegistry:
    keyfiles = cmdargs.keyfile or _config_list(config, 'keyfile')
    if not keyfiles:
        logger.critical('E: No public key files given, use -k or set commitsig.keyfile')
        sys.exit(1)
    try:
        registry = KeyRegistry.from_keydata(load_key_files(keyfiles))
    except ConfigurationError as ex:
        logger.critical('E: %s', ex)
        sys.exit(1)
    logger.info('Loaded keys for %s identities', len(registry))
    return registry


def cmd_verify(cmdargs: argparse.Namespace, config: GitConfigType) -> None:
    registry = _load_registry(cmdargs, config)

    commits = list(cmdargs.commit)
    if cmdargs.commits:
        try:
            commits += parse_commit_list(cmdargs.commits)
        except ConfigurationError as ex:
            logger.critical('E: %s', ex)
            sys.exit(1)
    if not commits:
        basebranch = cmdargs.basebranch or config.get('basebranch') or DEFAULT_BASE
        path = cmdargs.path or config.get('path')
        assert isinstance(basebranch, str) and (path is None or isinstance(path, str))
        try:
            commits = get_commit_list(basebranch, path=path)
        except (RuntimeError, OSError, subprocess.SubprocessError) as ex:
            logger.critical('E: %s', ex)
            sys.exit(1)

    if not commits:
        logger.critical('No commits to verify')
        sys.exit(0)

    all_verified, outcomes = validate_commits(commits, registry)

    highest_err = 0
    for commitid, result, sigtype, signer, errors in outcomes:
        if result > highest_err:
            highest_err = result
        if cmdargs.github:
            continue

        if result == RES_VALID:
            logger.critical('  PASS | %s, %s', commitid, signer)
        elif result <= RES_NOSIG:
            logger.critical(' NOSIG | %s', commitid)
        elif result <= RES_NOKEY:
            logger.critical(' NOKEY | %s', commitid)
        elif result <= RES_NOMATCH:
            logger.critical('NOMATCH| %s', commitid)
        elif result <= RES_ERROR:
            logger.critical(' ERROR | %s', commitid)
        else:
            logger.critical('BADSIG | %s', commitid)
        for error in errors:
            logger.critical('       | %s', error)

    if not all_verified:
        logger.error('One or more commits failed verification.')

    sys.exit(highest_err)


def cmd_show(cmdargs: argparse.Namespace, config: GitConfigType) -> None:
    try:
        rawdata = get_commit_object(cmdargs.commit[0])
    except (RuntimeError, OSError, subprocess.SubprocessError) as ex:
        logger.critical('E: %s', ex)
        sys.exit(1)

    cobj = CommitObject(rawdata)
    if cmdargs.signature:
        if not cobj.signed:
            logger.critical('E: commit %s is not signed', cmdargs.commit[0])
            sys.exit(1)
        logger.info('Signature type: %s', cobj.sigtype)
        sys.stdout.buffer.write(cobj.signature_as_bytes() + b'\n')
    else:
        sys.stdout.buffer.write(cobj.payload_as_bytes())


def cmd_list_keys(cmdargs: argparse.Namespace, config: GitConfigType) -> None:
    registry = _load_registry(cmdargs, config)
    for identity in registry.identities():
        for pkey in registry.get_keys(identity):
            logger.critical('%7s | %s | %s', pkey.kind, pkey.fingerprint, identity)


def command() -> None:
    parser = argparse.ArgumentParser(
        prog='commitsig',
        description='Verify that git commits are signed by trusted OpenPGP or OpenSSH keys',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('-v', '--verbose', action='store_true', default=False,
                        help='Be a bit more verbose')
    parser.add_argument('-d', '--debug', action='store_true', default=False,
                        help='Show debugging output')
    parser.add_argument('-s', '--section', dest='section', default=None,
                        help='Use config section [commitsig "sectionname"]')
    parser.add_argument('--version', action='version', version=__VERSION__)

    subparsers = parser.add_subparsers(help='sub-command help', dest='subcmd')

    sp_verify = subparsers.add_parser('verify', help='Verify commit signatures against trusted keys')
    sp_verify.add_argument('-k', '--key-file', dest='keyfile', action='append', default=None,
                           help='Trusted public key file (OpenPGP armored or OpenSSH), can be repeated')
    sp_verify.add_argument('-b', '--base-branch', dest='basebranch', default=None,
                           help='Check commits on HEAD that are not on this branch (default: main)')
    sp_verify.add_argument('-p', '--path', dest='path', default=None,
                           help='Only check commits touching this path')
    sp_verify.add_argument('--commits', dest='commits', default=None,
                           help='Commits to check, as a JSON array or a whitespace-separated list')
    sp_verify.add_argument('--github', dest='github', action='store_true', default=False,
                           help='Report using GitHub Actions annotations')
    sp_verify.add_argument('commit', nargs='*', help='Commits to check')
    sp_verify.set_defaults(func=cmd_verify)

    sp_show = subparsers.add_parser('show', help='Show the signed payload of a commit')
    sp_show.add_argument('--signature', action='store_true', default=False,
                         help='Show the embedded signature instead of the payload')
    sp_show.add_argument('commit', nargs=1, help='Commit to show')
    sp_show.set_defaults(func=cmd_show)

    sp_keys = subparsers.add_parser('list-keys', help='List trusted keys by identity')
    sp_keys.add_argument('-k', '--key-file', dest='keyfile', action='append', default=None,
                         help='Trusted public key file, can be repeated')
    sp_keys.set_defaults(func=cmd_list_keys)

    _args = parser.parse_args()

    logger.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    formatter = logging.Formatter('%(message)s')
    github = getattr(_args, 'github', False)
    if github:
        formatter = GithubFormatter('%(message)s')
    ch.setFormatter(formatter)

    if _args.debug:
        ch.setLevel(logging.DEBUG)
    elif _args.verbose or github:
        ch.setLevel(logging.INFO)
    else:
        ch.setLevel(logging.CRITICAL)

    logger.addHandler(ch)
    try:
        config = get_main_config(section=_args.section)
    except ConfigurationError as ex:
        logger.critical('E: %s', ex)
        sys.exit(1)

    if 'func' not in _args:
        parser.print_help()
        sys.exit(1)

    try:
        _args.func(_args, config)
    except RuntimeError:
        sys.exit(1)


if __name__ == '__main__':
    command()
