"""
Command Resolver
================
Two small lookups the executor and the default pipeline share:

    - shell_argv(): turns a step script into the argv that runs it.
    - resolve_commands(): maps a detected project type to its standard
      lint / test / package commands.

Resolver never executes commands — it only returns string sequences.
Deterministic: same input → same commands, always.
"""
from dataclasses import dataclass
from typing import Optional

# bash runs with errexit + pipefail so a failing command in a pipe fails the step
_SHELL_ARGV: dict[str, list[str]] = {
    "bash": ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c"],
    "sh": ["sh", "-e", "-c"],
}


def shell_argv(shell: str, script: str) -> list[str]:
    """Return the argv that runs *script* with *shell*."""
    if shell not in _SHELL_ARGV:
        raise ValueError(f"Unsupported shell '{shell}'")
    return _SHELL_ARGV[shell] + [script]


@dataclass(frozen=True)
class ResolvedCommands:
    """
    Immutable container for resolved build commands.

    Fields
    ------
    project_type : str
        The project type these commands were resolved for.
    test_command : str
        Unit test command (e.g. "mvn -B test").
    lint_command : str | None
        Style / static check run before tests. None if not applicable.
    package_command : str | None
        Produces the deployable artifact. None if not applicable.
    sonar_command : str | None
        SonarCloud analysis, reading the token from $SONAR_TOKEN. None if the
        toolchain has no scanner plugin.
    """
    project_type: str
    test_command: str
    lint_command: Optional[str] = None
    package_command: Optional[str] = None
    sonar_command: Optional[str] = None


# ---------------------------------------------------------------------------
# Command mapping: project_type → ResolvedCommands
# ---------------------------------------------------------------------------
_COMMAND_MAP: dict[str, ResolvedCommands] = {
    "java": ResolvedCommands(
        project_type="java",
        lint_command="mvn -B checkstyle:check",
        test_command="mvn -B test",
        package_command="mvn -B package -DskipTests",
        sonar_command=(
            "mvn -B verify org.sonarsource.scanner.maven:sonar-maven-plugin:sonar "
            "-Dsonar.token=$SONAR_TOKEN"
        ),
    ),
    "gradle": ResolvedCommands(
        project_type="gradle",
        lint_command="./gradlew checkstyleMain",
        test_command="./gradlew test",
        package_command="./gradlew bootJar",
        sonar_command="./gradlew sonar -Dsonar.token=$SONAR_TOKEN",
    ),
    "python": ResolvedCommands(
        project_type="python",
        # requirements.txt when present, else the pyproject.toml / setup.py project itself
        lint_command=(
            "if [ -f requirements.txt ]; then pip install -r requirements.txt; else pip install -e .; fi"
            " && python -m pyflakes ."
        ),
        test_command="pytest",
    ),
    "node": ResolvedCommands(
        project_type="node",
        lint_command="npm ci && npm run lint --if-present",
        test_command="npm test",
        package_command="npm run build --if-present",
    ),
    "go": ResolvedCommands(
        project_type="go",
        lint_command="go vet ./...",
        test_command="go test ./...",
        package_command="go build ./...",
    ),
}

# Fallback when project type is unknown or None
_FALLBACK = ResolvedCommands(
    project_type="unknown",
    test_command="echo 'no test command — unknown project type'",
)


def resolve_commands(project_type: Optional[str]) -> ResolvedCommands:
    """
    Look up standard commands for the given project type.

    If None or unrecognised, returns fallback commands.
    """
    if project_type is None:
        return _FALLBACK
    return _COMMAND_MAP.get(project_type, _FALLBACK)


def get_supported_project_types() -> list[str]:
    """Return all project types that have command mappings."""
    return sorted(_COMMAND_MAP.keys())
