# gopose

`gopose` looks for port and network conflicts in a Docker Compose project and
resolves them without touching your Compose file. It writes a
`docker-compose.override.yml` file, and Docker Compose merges that file with
the original.

## What it checks

- **Host ports in use.** It runs `netstat -an` and reads the `LISTEN` lines in
  BSD/macOS format (`tcp4 0 0 127.0.0.1.3333 *.* LISTEN`, `*.8080`). A published
  host port that is already listening counts as a conflict. Output in other
  formats is not recognised, and on such a system no ports are reported as in
  use.
- **Duplicate host ports.** A host port that a second service in the same file
  publishes again.
- **Subnets in use.** The first `ipam.config` subnet of each network is compared
  with the subnets of the existing Docker networks (`docker network ls` and
  `docker network inspect`). Only exact string matches count. Overlapping
  ranges that are written differently are not detected.
- **Network names in use.** If a network name, prefixed with `<project>_` when a
  project name is known, already exists in Docker, that is a conflict. This
  applies only to networks that declare a subnet.

If the Docker check fails, for example because `docker` is not installed, the
failure is logged as a warning and no network conflicts are reported.

## How conflicts are resolved

- **Ports.** The replacement is the first free port at or above
  `max(original + 1, range start)` within the port range. If there is none, the
  search starts again from the start of the range. Ports below 1024, ports that
  are already listening, and ports handed out earlier in the same run are
  skipped. A conflict that cannot be resolved is logged and left unresolved.
- **Subnets.** Each conflicting network gets the next unused `/24` from a fixed
  list: `10.20.0.0/24` to `10.255.0.0/24`, then `192.168.100.0/24` to
  `192.168.255.0/24`, then `172.30.0.0/24` to `172.255.0.0/24`. Candidates are
  only checked against subnets handed out in the same run. Fixed `ipv4_address`
  values of services on that network are moved into the new subnet and keep
  their last octet.

The `--strategy` value (`auto`, `range`, `user`) is recorded with each port
resolution as `auto_increment`, `range_allocation` or `user_defined`. Ports are
allocated the same way whichever strategy you choose.

Before the override is written, it is checked. It fails if a service has the
same host port twice, a host port outside 0–65535, a container port outside
1–65535, or if two resolutions received the same port.

## Installation

```
pip install .
```

## Usage

Resolve conflicts and write `docker-compose.override.yml`:

```
gopose up
```

Use a specific Compose file and port range:

```
gopose up -f custom-compose.yml --port-range 9000-9999
```

Check everything without writing a file:

```
gopose up --dry-run
```

If `-f` is not given, or is `docker-compose.yml`, the first of
`docker-compose.yml`, `docker-compose.yaml`, `compose.yml` and `compose.yaml`
in the current directory is used.

If `-p/--project-name` is not given and `COMPOSE_PROJECT_NAME` is not set, the
project name is taken from `git rev-parse --show-toplevel`. At the top level it
is the name of that directory. In any other directory it is
`<current directory name>_<top-level directory name>`. When a project name is
known, it is written into the override as `name:`.

If no conflicts are found, no file is written.

On failure, `gopose` prints `Error: <message>` to standard error and exits
with status 1.

### Options for `up`

| Option | Meaning |
| --- | --- |
| `-f, --file` | Compose file path (default `docker-compose.yml`, with auto-detection) |
| `--port-range` | Range for replacement ports, `start-end` within 1–65535 (default `8000-9999`) |
| `--strategy` | `auto`, `range` or `user` (default `auto`) |
| `-o, --output` | Output file (default `docker-compose.override.yml`) |
| `--dry-run` | Resolve and validate, but do not write the file |
| `-p, --project-name` | Compose project name |
| `--skip-compose-up` | Deprecated. Only prints a warning |

`up` also accepts the usual `docker compose up` options (`-d`, `--build`,
`--force-recreate`, `--no-deps`, `--remove-orphans`, `--scale`, `--env-file`,
`--abort-on-container-exit`, `--exit-code-from`, `--timeout`) and other unknown
arguments. They are parsed and then ignored.

### Global options

| Option | Meaning |
| --- | --- |
| `--config` | Settings file. Without it, `.gopose.yaml`, `.gopose.yml` or `.gopose` is looked for in the home directory, then in the current directory |
| `-v, --verbose` | Sets the log level to `debug` |
| `--detail` | Write log records with level, timestamp and fields, instead of bare messages |

### Settings file

The settings file is YAML with the sections `port`, `file`, `watcher` and
`log`. The defaults come from `gopose.config.default_config()`. Only the `log`
section changes what the commands do:

- `level`: `debug`, `info`, `warn` or `error`
- `format`: `text` gives `key=value` lines, `json` gives JSON lines
- `file`: append detailed records to this file instead of standard output

```yaml
log:
  level: debug
  format: json
```

## What it does not do

- `gopose up` does not start containers. Once the override file is written, run
  `docker compose up` yourself.
- `gopose clean` and `gopose status` only log that they started and print a
  message saying they are still being worked on. They do not delete files and
  do not report any state.
- No backups are made, and nothing watches the running containers.

## Library use

The same steps can be run from Python:

```python
from gopose.cli import create_port_config
from gopose.config import default_log_config
from gopose.detector import UnifiedConflictDetector
from gopose.logger import LoggerFactory
from gopose.models import ResolutionStrategy
from gopose.network import DockerNetworkDetector
from gopose.override import OverrideGenerator
from gopose.parser import ComposeParser
from gopose.scanner import NetstatPortDetector, PortAllocator
from gopose.unified import UnifiedOverrideGenerator

log = LoggerFactory(detailed=False).create(default_log_config())
config = ComposeParser(log).parse_compose_file("docker-compose.yml")

ports = NetstatPortDetector(log)
detector = UnifiedConflictDetector(ports, DockerNetworkDetector(log), log)
info = detector.detect_conflicts(config, "myproject")

if info.has_conflicts():
    generator = UnifiedOverrideGenerator(PortAllocator(ports, log), log)
    generator.resolve_conflicts(
        info, ResolutionStrategy.AUTO_INCREMENT, create_port_config("8000-9999")
    )
    override = generator.generate_from_conflicts(config, info)
    writer = OverrideGenerator(log)
    writer.validate_override(override)
    print(writer.render(override))
    writer.write_override_file(override, "docker-compose.override.yml")
```

Failures are raised as `gopose.errors.AppError`. Each carries a `code`
(`ErrorCode`), a `message`, an optional `cause` and a `fields` dict.

Other helpers:

- `gopose.parser.ComposeFileDetector` finds the Compose files in a directory.
- `gopose.unified.allocate_subnet` and `gopose.unified.remap_ip_addresses` pick
  a free subnet and move addresses into it.
- `gopose.scanner.parse_netstat_output` reads netstat text.
- `gopose.cli.parse_port_range` parses a port range.