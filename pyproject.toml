[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "logicutils"
version = "0.1.0"
description = "Build-tool building blocks: a dependency-aware parallel task runner, rule file parsing with goal evaluation, and a job queue abstraction"
requires-python = ">=3.10"
dependencies = []
keywords = ["build", "make", "dag", "parallel", "rules", "queue", "slurm", "sge", "pbs"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
lu-par = "logicutils.par_cli:main"
lu-queue = "logicutils.queue_cli:main"

[tool.hatch.build.targets.wheel]
packages = ["logicutils"]

[tool.pytest.ini_options]
addopts = "-ra"
