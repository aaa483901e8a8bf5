[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gopose"
version = "0.1.0"
description = "Detect Docker Compose port and network subnet conflicts and resolve them by writing an override file"
requires-python = ">=3.10"
keywords = ["docker", "docker-compose", "ports", "conflicts", "override", "networks", "subnets"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
gopose = "gopose.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["gopose"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
