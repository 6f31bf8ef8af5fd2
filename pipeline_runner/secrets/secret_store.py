"""
Secret Store
============
Opaque credential references for pipeline steps.

Secrets are referenced in pipeline files as ``${{ secrets.NAME }}`` and
resolved here. Values come from the process environment (after .env is
loaded by python-dotenv):

    - Every name in DEFAULT_SECRET_NAMES (DOCKER_USERNAME, EC2_HOST, ...)
    - Any RUNNER_SECRET_<NAME> variable, exposed as NAME

Masking:
    mask() replaces every known value of 3+ characters with *** so logs stored on runs and
    log records written by the logging filter never carry a credential.
    Multi-line values (SSH keys) are also masked line by line. Shorter
    values are left alone and reported with a warning when loaded.
"""
import logging
import os
from typing import Iterable, Mapping, Optional

from dotenv import dotenv_values

from pipeline_runner.core.constants import DEFAULT_SECRET_NAMES, SECRET_ENV_PREFIX, SECRET_MASK
from pipeline_runner.core.errors import MissingSecretError

logger = logging.getLogger(__name__)

# Values shorter than this are not masked (would mangle ordinary text)
_MIN_MASK_LENGTH = 3


class SecretStore:

    def __init__(self, values: Optional[Mapping[str, str]] = None) -> None:
        self._values: dict[str, str] = {k: str(v) for k, v in (values or {}).items() if v is not None and v != ""}
        self._mask_terms: list[str] = self._build_mask_terms()

        too_short = sorted(k for k, v in self._values.items() if len(v) < _MIN_MASK_LENGTH)
        if too_short:
            logger.warning(
                "Secrets shorter than %d characters are not masked in logs: %s",
                _MIN_MASK_LENGTH, too_short,
            )

    @classmethod
    def from_env(
        cls,
        names: Iterable[str] = DEFAULT_SECRET_NAMES,
        env_file: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "SecretStore":
        """
        Collect secrets from an optional .env file and the environment.

        The environment wins over the file, matching python-dotenv's
        default of not overriding variables that are already set.
        """
        source: dict[str, str] = {}
        if env_file and os.path.isfile(env_file):
            source.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
        source.update(environ if environ is not None else os.environ)

        values: dict[str, str] = {}
        for name in names:
            if source.get(name):
                values[name] = source[name]
        for key, value in source.items():
            if key.startswith(SECRET_ENV_PREFIX) and value:
                values[key[len(SECRET_ENV_PREFIX):]] = value

        logger.info("Secret store loaded | names=%s", sorted(values))
        return cls(values)

    def _build_mask_terms(self) -> list[str]:
        terms: set[str] = set()
        for value in self._values.values():
            if len(value) >= _MIN_MASK_LENGTH:
                terms.add(value)
            for line in value.splitlines():
                line = line.strip()
                if len(line) >= _MIN_MASK_LENGTH:
                    terms.add(line)
        # Longest first so a value containing another is replaced whole
        return sorted(terms, key=len, reverse=True)

    def get(self, name: str) -> str:
        if name not in self._values:
            raise MissingSecretError(name)
        return self._values[name]

    def has(self, name: str) -> bool:
        return name in self._values

    def names(self) -> list[str]:
        return sorted(self._values)

    def missing(self, names: Iterable[str]) -> list[str]:
        return sorted(n for n in set(names) if n not in self._values)

    def as_context(self) -> dict[str, str]:
        """Mapping for the `secrets` expression root."""
        return dict(self._values)

    def mask(self, text: str) -> str:
        if not text or not self._mask_terms:
            return text
        for term in self._mask_terms:
            if term in text:
                text = text.replace(term, SECRET_MASK)
        return text

    def __repr__(self) -> str:
        return f"SecretStore(names={self.names()})"


class SecretMaskingFilter(logging.Filter):
    """
    Logging filter that masks secret values in rendered messages.

    Tracebacks are rendered here and stored masked in ``record.exc_text``;
    ``exc_info`` is cleared so no formatter renders them again unmasked.
    """

    _formatter = logging.Formatter()

    def __init__(self, store: SecretStore) -> None:
        super().__init__()
        self.store = store

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = self.store.mask(message)
        if masked != message:
            record.msg = masked
            record.args = None

        if record.exc_info:
            if not record.exc_text:
                record.exc_text = self._formatter.formatException(record.exc_info)
            record.exc_info = None
        if record.exc_text:
            record.exc_text = self.store.mask(record.exc_text)
        if record.stack_info:
            record.stack_info = self.store.mask(record.stack_info)
        return True
