#!/usr/bin/env python3
"""
Matrix Server Setup Generator

Interactive Python script to generate the deployment files for a Matrix homeserver
with LiveKit-backed voice/video calling. The operator picks a homeserver (Conduit or
Synapse), answers a handful of prompts, and the script renders docker-compose,
homeserver, LiveKit and Caddy configuration from the templates directory into a
deployment directory together with a .env file holding the generated secrets.

Usage:
    python3 generate_matrix_setup.py [--output-dir DIR] [--config-file answers.yaml]
"""

import argparse
import logging
import re
import secrets
import shutil
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from string import Template
from typing import Any, Callable, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

SCRIPT_DIR = Path(__file__).resolve().parent
TEMPLATE_DIR = SCRIPT_DIR / 'templates'
DEPLOY_DIR = SCRIPT_DIR / 'deploy'

DEFAULT_ROCKSDB_CACHE_MB = "256"

# Answers-file spellings of a flag, mapped to yes/no
FLAG_STRINGS = {'true': True, 'yes': True, 'y': True, '1': True,
                'false': False, 'no': False, 'n': False, '0': False}

FIREWALL_TCP_PORTS = "80, 443, 8448"
FIREWALL_UDP_PORTS = "443, 7882-7892"

SYNAPSE_REGISTER_COMMAND = (
    "docker compose exec synapse register_new_matrix_user -c /data/homeserver.yaml "
    "http://localhost:8008 -u admin -p YOUR_PASSWORD -a"
)


class Colors:
    """Color constants for terminal output"""
    BLUE = '\033[0;34m'
    CYAN = '\033[0;36m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    RED = '\033[0;31m'
    GRAY = '\033[90m'
    WHITE = '\033[97m'
    RESET = '\033[0m'


class SetupError(Exception):
    """Base class for fatal setup failures"""


class TemplateNotFoundError(SetupError):
    """A template directory or template file is missing"""

    def __init__(self, path: Path, what: str = "Template"):
        self.path = Path(path)
        super().__init__(f"{what} not found at {self.path}")


class SecretGenerationError(SetupError):
    """No usable source of random bytes"""


class ConfigFileError(SetupError):
    """The pre-configuration file could not be used"""


class Homeserver(Enum):
    """Supported Matrix homeserver implementations"""
    CONDUIT = 'conduit'
    SYNAPSE = 'synapse'

    @property
    def template_subdir(self) -> str:
        return self.value

    @property
    def needs_synapse_secrets(self) -> bool:
        return self is Homeserver.SYNAPSE

    @classmethod
    def from_choice(cls, choice: str) -> 'Homeserver':
        return {'1': cls.CONDUIT, '2': cls.SYNAPSE}[choice]


@dataclass(frozen=True)
class SetupConfig:
    """Values collected from the operator"""
    homeserver: Homeserver
    matrix_domain: str
    livekit_domain: str
    admin_email: str
    allow_registration: bool = False
    allow_federation: bool = True
    rocksdb_cache_mb: str = DEFAULT_ROCKSDB_CACHE_MB


@dataclass(frozen=True)
class Credentials:
    """Secrets generated for a single run"""
    livekit_api_key: str
    livekit_api_secret: str
    macaroon_secret: Optional[str] = None
    form_secret: Optional[str] = None
    registration_secret: Optional[str] = None


@dataclass(frozen=True)
class TemplateFile:
    source: Path
    target: str
    render: bool = True


# Files each homeserver needs, in the order they are written
TEMPLATE_SETS = {
    Homeserver.CONDUIT: (
        ('docker-compose.yml', True),
        ('conduit.toml', True),
        ('livekit.yaml', True),
        ('Caddyfile', True),
    ),
    Homeserver.SYNAPSE: (
        ('docker-compose.yml', True),
        ('homeserver.yaml', True),
        ('log.config', False),
        ('livekit.yaml', True),
        ('Caddyfile', True),
    ),
}

ENV_FILE_NAME = '.env'


def write_colored_output(message: str, color: str = Colors.WHITE, stream=None) -> None:
    """Write colored output to console"""
    print(f"{color}{message}{Colors.RESET}", file=stream or sys.stdout)


def write_info(message: str) -> None:
    """Write info message with blue color"""
    write_colored_output(message, Colors.BLUE)


def write_success(message: str) -> None:
    """Write success message with green color"""
    write_colored_output(message, Colors.GREEN)


def write_warning(message: str) -> None:
    """Write warning message with yellow color"""
    write_colored_output(message, Colors.YELLOW)


def write_error(message: str) -> None:
    """Write error message with red color to stderr"""
    write_colored_output(f"❌ Error: {message}", Colors.RED, stream=sys.stderr)


# ---------------------------------------------------------------------------
# Interactive collection
# ---------------------------------------------------------------------------

Reader = Callable[[str], str]


def read_line(prompt: str) -> str:
    """Show the prompt on stderr and read one line from stdin.

    The prompt goes to stderr so it stays visible when stdout is redirected.
    Raises EOFError when stdin is closed.
    """
    print(prompt, end='', file=sys.stderr, flush=True)
    return input()


def prompt_required(name: str, prompt_text: str, reader: Reader = read_line) -> str:
    """Prompt until a non-empty value is entered"""
    while True:
        value = reader(f"{prompt_text}: ").strip()
        if value:
            logger.debug("Collected %s", name)
            return value
        write_colored_output("This field is required.", Colors.RED, stream=sys.stderr)


def prompt_optional(prompt_text: str, default: str, reader: Reader = read_line) -> str:
    """Prompt once, falling back to default on empty input"""
    value = reader(f"{prompt_text} [{default}]: ")
    return value if value else default


def prompt_yes_no(prompt_text: str, default: str, reader: Reader = read_line) -> bool:
    """Prompt for a yes/no answer.

    Anything starting with y or Y is yes, everything else is no. Empty input
    is replaced by default before classification.
    """
    value = reader(f"{prompt_text} (y/n) [{default}]: ") or default
    return bool(re.match(r'^[Yy]', value))


def prompt_homeserver(reader: Reader = read_line, default: str = '1') -> Homeserver:
    """Ask which homeserver to deploy, re-prompting until the answer is 1 or 2"""
    err = sys.stderr
    write_colored_output("Choose your Matrix homeserver:", Colors.CYAN, stream=err)
    print("", file=err)
    print("  1) Conduit  - Lightweight, fast, written in Rust", file=err)
    print("                Best for: Small deployments, low resources", file=err)
    print("", file=err)
    print("  2) Synapse  - Reference implementation, feature-complete", file=err)
    print("                Best for: Full compatibility, larger deployments", file=err)
    print("", file=err)

    while True:
        choice = reader(f"Enter choice (1 or 2) [{default}]: ") or default
        if choice in ('1', '2'):
            return Homeserver.from_choice(choice)
        write_colored_output("Please enter 1 or 2", Colors.RED, stream=err)


def _default_flag(value: Any, fallback: str) -> str:
    """Turn a pre-configured flag into the y/n default shown at the prompt"""
    if value is None:
        return fallback
    if isinstance(value, bool):
        return 'y' if value else 'n'
    text = str(value).strip().lower()
    if text in FLAG_STRINGS:
        return 'y' if FLAG_STRINGS[text] else 'n'
    return str(value)


def collect_configuration(
    homeserver: Homeserver,
    reader: Reader = read_line,
    pre_config: Optional[Dict[str, Any]] = None
) -> SetupConfig:
    """Collect the deployment configuration from the operator"""
    if pre_config is None:
        pre_config = {}

    def required(name: str, prompt_text: str) -> str:
        if pre_config.get(name):
            return prompt_optional(prompt_text, str(pre_config[name]), reader)
        return prompt_required(name, prompt_text, reader)

    write_warning("Please provide the following information:\n")

    matrix_domain = required('MATRIX_DOMAIN', "Matrix server domain (e.g., matrix.example.com)")
    livekit_domain = required('LIVEKIT_DOMAIN', "LiveKit server domain (e.g., livekit.example.com)")
    admin_email = required('ADMIN_EMAIL', "Admin email (for Let's Encrypt)")

    print()
    write_warning("Optional configuration (press Enter for defaults):\n")

    allow_registration = prompt_yes_no(
        "Allow public registration?",
        _default_flag(pre_config.get('ALLOW_REGISTRATION'), 'n'),
        reader
    )
    allow_federation = prompt_yes_no(
        "Allow federation with other servers?",
        _default_flag(pre_config.get('ALLOW_FEDERATION'), 'y'),
        reader
    )

    rocksdb_cache_mb = DEFAULT_ROCKSDB_CACHE_MB
    if homeserver is Homeserver.CONDUIT:
        rocksdb_cache_mb = prompt_optional(
            "RocksDB cache size in MB",
            str(pre_config.get('ROCKSDB_CACHE_MB', DEFAULT_ROCKSDB_CACHE_MB)),
            reader
        )

    return SetupConfig(
        homeserver=homeserver,
        matrix_domain=matrix_domain,
        livekit_domain=livekit_domain,
        admin_email=admin_email,
        allow_registration=allow_registration,
        allow_federation=allow_federation,
        rocksdb_cache_mb=rocksdb_cache_mb,
    )


def load_pre_config(path: Path) -> Dict[str, Any]:
    """Load pre-configured answers from a YAML or JSON file"""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigFileError(f"Cannot read configuration file {path}: {e.strerror}") from e
    except yaml.YAMLError as e:
        raise ConfigFileError(f"Invalid configuration file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigFileError(f"Configuration file {path} must contain a mapping")
    return data


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------

def _openssl_hex(num_bytes: int) -> str:
    result = subprocess.run(
        ['openssl', 'rand', '-hex', str(num_bytes)],
        capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def _urandom_hex(num_bytes: int) -> str:
    return secrets.token_hex(num_bytes)


def generate_secret(num_bytes: int) -> str:
    """Generate num_bytes random bytes as 2*num_bytes lowercase hex characters.

    openssl is tried first; the OS entropy source is the fallback. Raises
    SecretGenerationError when neither produces a full-length secret.
    """
    if num_bytes <= 0:
        raise ValueError("num_bytes must be positive")

    expected = re.compile(rf'^[0-9a-f]{{{2 * num_bytes}}}$')

    try:
        value = _openssl_hex(num_bytes)
        if expected.match(value):
            return value
        logger.debug("openssl returned malformed output, using OS entropy source")
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug("openssl unavailable (%s), using OS entropy source", e)

    try:
        value = _urandom_hex(num_bytes)
    except (OSError, NotImplementedError) as e:
        raise SecretGenerationError(f"No source of random bytes available: {e}") from e

    if not expected.match(value):
        raise SecretGenerationError(f"Entropy source returned {len(value) // 2} of {num_bytes} bytes")
    return value


def generate_credentials(
    homeserver: Homeserver,
    secret_func: Callable[[int], str] = generate_secret
) -> Credentials:
    """Generate the LiveKit API pair and, for Synapse, its three secrets"""
    api_key = secret_func(16)
    api_secret = secret_func(32)

    if not homeserver.needs_synapse_secrets:
        return Credentials(livekit_api_key=api_key, livekit_api_secret=api_secret)

    return Credentials(
        livekit_api_key=api_key,
        livekit_api_secret=api_secret,
        macaroon_secret=secret_func(32),
        form_secret=secret_func(32),
        registration_secret=secret_func(32),
    )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

class PlaceholderTemplate(Template):
    """string.Template matching {{NAME}} tokens and leaving everything else alone"""
    flags = 0
    pattern = r"""
    \{\{(?:
      (?P<escaped>(?!))                 |
      (?P<named>[A-Z][A-Z0-9_]*)\}\}    |
      (?P<braced>(?!))                  |
      (?P<invalid>(?!))
    )
    """


def _flag(value: bool) -> str:
    return 'true' if value else 'false'


def placeholder_values(config: SetupConfig, credentials: Credentials) -> Dict[str, str]:
    """Map every placeholder token to its value for this run"""
    return {
        'MATRIX_DOMAIN': config.matrix_domain,
        'LIVEKIT_DOMAIN': config.livekit_domain,
        'ADMIN_EMAIL': config.admin_email,
        'ALLOW_REGISTRATION': _flag(config.allow_registration),
        'ALLOW_FEDERATION': _flag(config.allow_federation),
        'ROCKSDB_CACHE_MB': config.rocksdb_cache_mb,
        'LIVEKIT_API_KEY': credentials.livekit_api_key,
        'LIVEKIT_API_SECRET': credentials.livekit_api_secret,
        'MACAROON_SECRET': credentials.macaroon_secret or '',
        'FORM_SECRET': credentials.form_secret or '',
        'REGISTRATION_SECRET': credentials.registration_secret or '',
    }


def render_text(text: str, values: Dict[str, str]) -> str:
    """Replace {{NAME}} tokens in text with their values"""
    return PlaceholderTemplate(text).safe_substitute(values)


def render_template(template_path: Path, output_path: Path, values: Dict[str, str]) -> None:
    """Render a template file into output_path"""
    # newline='' and surrogateescape keep any template byte-identical
    with open(template_path, 'r', encoding='utf-8', errors='surrogateescape', newline='') as f:
        text = f.read()

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w', encoding='utf-8', errors='surrogateescape', newline='') as f:
        f.write(render_text(text, values))


def copy_static(template_path: Path, output_path: Path) -> None:
    """Copy a file without substitution"""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(template_path, output_path)


def check_template_root(template_root: Path) -> None:
    if not template_root.is_dir():
        raise TemplateNotFoundError(template_root, "Templates directory")


def resolve_template_set(template_root: Path, homeserver: Homeserver) -> List[TemplateFile]:
    """List the templates for a homeserver, failing on anything missing"""
    check_template_root(template_root)

    homeserver_dir = template_root / homeserver.template_subdir
    if not homeserver_dir.is_dir():
        raise TemplateNotFoundError(homeserver_dir, "Template directory")

    files = []
    for name, render in TEMPLATE_SETS[homeserver]:
        source = homeserver_dir / name
        if not source.is_file():
            raise TemplateNotFoundError(source)
        files.append(TemplateFile(source=source, target=name, render=render))
    return files


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def new_env_file(
    config: SetupConfig,
    credentials: Credentials,
    generated_at: Optional[datetime] = None
) -> str:
    """Generate the .env file contents"""
    if generated_at is None:
        generated_at = datetime.now(timezone.utc)
    timestamp = generated_at.strftime("%Y-%m-%d %H:%M:%S UTC")
    homeserver = config.homeserver.value

    env = f'''# =============================================================================
# Matrix Server Environment Configuration
# Generated by generate_matrix_setup.py on {timestamp}
# Homeserver: {homeserver}
# =============================================================================

# Homeserver Type
HOMESERVER={homeserver}

# Domain Configuration
MATRIX_DOMAIN={config.matrix_domain}
LIVEKIT_DOMAIN={config.livekit_domain}
ADMIN_EMAIL={config.admin_email}

# LiveKit API Credentials (keep secret!)
LIVEKIT_API_KEY={credentials.livekit_api_key}
LIVEKIT_API_SECRET={credentials.livekit_api_secret}

# Server Configuration
ALLOW_REGISTRATION={_flag(config.allow_registration)}
ALLOW_FEDERATION={_flag(config.allow_federation)}
'''

    if config.homeserver is Homeserver.CONDUIT:
        env += f"ROCKSDB_CACHE_MB={config.rocksdb_cache_mb}\n"
    else:
        env += f'''
# Synapse Secrets (keep these safe!)
MACAROON_SECRET={credentials.macaroon_secret}
FORM_SECRET={credentials.form_secret}
REGISTRATION_SHARED_SECRET={credentials.registration_secret}
'''

    return env


def write_deployment(
    output_dir: Path,
    config: SetupConfig,
    credentials: Credentials,
    template_files: List[TemplateFile]
) -> List[str]:
    """Write rendered templates and the .env file into output_dir.

    Existing files are overwritten. Returns the generated file names in the
    order they were written.
    """
    output_dir = Path(output_dir)
    write_info("\nCreating deployment directory...")
    output_dir.mkdir(parents=True, exist_ok=True)

    values = placeholder_values(config, credentials)
    generated = []

    write_info("Processing templates...")
    for template in template_files:
        print(f"  - {template.target}")
        target = output_dir / template.target
        if template.render:
            render_template(template.source, target, values)
        else:
            copy_static(template.source, target)
        logger.info("Wrote %s", target)
        generated.append(template.target)

    print(f"  - {ENV_FILE_NAME}")
    env_path = output_dir / ENV_FILE_NAME
    env_path.write_text(new_env_file(config, credentials), encoding='utf-8')
    env_path.chmod(0o600)
    logger.info("Wrote %s", env_path)
    generated.append(ENV_FILE_NAME)

    return generated


def print_summary(
    output_dir: Path,
    config: SetupConfig,
    credentials: Credentials,
    generated_files: List[str]
) -> None:
    """Print generated files, credentials and the follow-up steps"""
    print()
    write_success("==============================================")
    write_success("       Setup Complete!")
    write_success("==============================================")
    print()
    print(f"Homeserver: {Colors.CYAN}{config.homeserver.value}{Colors.RESET}")
    print(f"Deployment files created in: {Colors.BLUE}{output_dir}/{Colors.RESET}")
    print()

    write_warning("Files generated:")
    for name in generated_files:
        suffix = " (contains secrets)" if name == ENV_FILE_NAME else ""
        print(f"  - {name}{suffix}")
    print()

    write_warning("LiveKit API Credentials (save these!):")
    print(f"  API Key:    {Colors.BLUE}{credentials.livekit_api_key}{Colors.RESET}")
    print(f"  API Secret: {Colors.BLUE}{credentials.livekit_api_secret}{Colors.RESET}")

    if config.homeserver is Homeserver.SYNAPSE:
        print()
        write_warning("Synapse Registration Secret (for creating admin users):")
        print(f"  {Colors.BLUE}{credentials.registration_secret}{Colors.RESET}")

    print()
    write_warning("DNS Records Required:")
    print(f"  A record: {config.matrix_domain} -> Your Server IP")
    print(f"  A record: {config.livekit_domain} -> Your Server IP")
    print()
    write_warning("Firewall Ports Required:")
    print(f"  TCP: {FIREWALL_TCP_PORTS}")
    print(f"  UDP: {FIREWALL_UDP_PORTS}")
    print()
    write_warning("To start the server:")
    print(f"  cd {output_dir}")
    print("  docker compose up -d")
    print()
    write_warning("To view logs:")
    print("  docker compose logs -f")
    print()

    if config.homeserver is Homeserver.SYNAPSE:
        write_warning("To create an admin user (after starting):")
        print(f"  {SYNAPSE_REGISTER_COMMAND}")
        print()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run_setup(
    output_dir: Path,
    template_root: Path,
    reader: Reader = read_line,
    pre_config: Optional[Dict[str, Any]] = None,
    secret_func: Callable[[int], str] = generate_secret
) -> List[str]:
    """Run the full collect, generate, render and write sequence"""
    if pre_config is None:
        pre_config = {}

    check_template_root(template_root)

    default_choice = '2' if str(pre_config.get('HOMESERVER', '')).lower() == 'synapse' else '1'
    homeserver = prompt_homeserver(reader, default_choice)
    print()
    write_success(f"Selected: {homeserver.value}")
    print()

    template_files = resolve_template_set(template_root, homeserver)

    config = collect_configuration(homeserver, reader, pre_config)

    print()
    write_info("Generating API credentials...")
    credentials = generate_credentials(homeserver, secret_func)

    generated = write_deployment(output_dir, config, credentials, template_files)
    print_summary(output_dir, config, credentials, generated)
    return generated


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='[%(asctime)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr
    )


def main(argv: Optional[List[str]] = None) -> None:
    """Main execution function"""
    parser = argparse.ArgumentParser(
        description="Generate Matrix server deployment files from templates"
    )
    parser.add_argument(
        '--output-dir',
        default=str(DEPLOY_DIR),
        help="Directory for the generated deployment files (default: ./deploy next to this script)"
    )
    parser.add_argument(
        '--template-dir',
        default=str(TEMPLATE_DIR),
        help="Template root containing conduit/ and synapse/ (default: ./templates next to this script)"
    )
    parser.add_argument(
        '--config-file',
        help="Optional YAML or JSON file with pre-configured answers used as prompt defaults"
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help="Enable debug logging"
    )

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    write_info("==============================================")
    write_info("       Matrix Server Setup Script")
    write_info("==============================================")
    print()

    try:
        pre_config = {}
        if args.config_file:
            write_info(f"Loading configuration from: {args.config_file}")
            pre_config = load_pre_config(Path(args.config_file))
            write_success("Configuration loaded successfully")

        run_setup(Path(args.output_dir), Path(args.template_dir), pre_config=pre_config)
    except SetupError as e:
        write_error(str(e))
        sys.exit(1)
    except EOFError:
        write_error("Input closed before setup was complete")
        sys.exit(1)
    except OSError as e:
        write_error(f"Error writing deployment files: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
