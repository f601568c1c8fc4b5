# logicutils

Small, composable building blocks for build pipelines:

- `logicutils.par` runs a set of shell tasks in parallel. It respects the
  dependencies between them, can retry failed tasks, and can roll back a
  directory when any task fails. The `lu-par` command wraps it.
- `logicutils.rules` reads pattern rule files into `Rule` objects and
  evaluates the simple goals attached to them.
- `logicutils.jobqueue` submits, watches and cancels jobs through one
  interface. It works with local processes, SLURM, SGE and PBS. The
  `lu-queue` command wraps it.

Tasks and jobs run through `sh -c`, so a POSIX shell is required. There are
no third-party dependencies.

## Installation

```sh
pip install .
```

## Parallel tasks: `lu-par`

Tasks are read from standard input or from a file, one per line, in the form
`ID<TAB>DEPS<TAB>COMMAND`. `DEPS` is a comma-separated list of task IDs and
may be empty. Blank lines are skipped, and so are lines that start with `#`.

```
compile		cc -c main.c
link	compile	cc -o app main.o
```

```sh
lu-par --taskfile tasks.tsv -j 4
lu-par --dry-run < tasks.tsv          # print a topological order only
lu-par --keep-going --retry 2 < tasks.tsv
lu-par --transaction .lu-store < tasks.tsv
lu-par --progress --prefix < tasks.tsv
lu-par --protocol-version
```

Options:

- `-j`, `--jobs N`: number of tasks run at once (default: the number of CPUs).
- `--keep-going`: keep starting independent tasks after one has failed.
  Without it, no new task starts once a task has failed.
- `--retry N`: run a failing task up to `N` more times.
- `--taskfile PATH`: read tasks from a file instead of standard input.
- `--dry-run`: check the graph and print the task IDs in dependency order.
- `--prefix`: report retries on standard error as `[ID] retry n/N`.
- `--progress`: print the number of tasks and the success count to
  standard error.
- `--transaction [PATH]`: snapshot the directory before the run and restore
  it if any task fails; without a value it is `.lu-store`.
- `--protocol-version`: print `0.1.0` and exit.

Exit status:

| Status | Meaning |
|--------|---------|
| 0 | every task succeeded (or there were no tasks) |
| 1 | at least one task failed |
| 2 | the input could not be read or was invalid, for example a malformed line, an unknown dependency or a cycle |

From Python:

```python
from logicutils.par import ExecOptions, execute_par, execute_par_with, parse_task_line, topological_order

tasks = [parse_task_line("a\t\ttrue"), parse_task_line("b\ta\ttrue")]
print(topological_order(tasks))          # ['a', 'b']
results = execute_par(tasks, 2, False, 0, False)
print(all(r.success for r in results))   # True

results = execute_par_with(tasks, ExecOptions(parallelism=2, transaction="store"))
```

`validate_dag` raises `UnknownDepError` or `CycleDetectedError`, and
`parse_task_line` raises `InvalidLineError`; all derive from `ParError`.
Results come back as `TaskResult(id, success, exit_code)` in the order the
tasks finished.

## Rule files

Rule files hold blocks separated by `---`. Each block has `pattern:`,
`deps:`, `recipe:` and optional `goal:` lines; blank lines and `#` comments
are ignored, and any other line raises `RuleParseError`.

```
pattern: align-{X}-{Y}.bam
deps: {X}.fa {Y}.fa
recipe: align {X}.fa {Y}.fa > align-{X}-{Y}.bam
goal: X != Y
---
pattern: {base}.o
deps: {base}.c
recipe: cc -c {base}.c -o {base}.o
```

```python
from logicutils.rules import evaluate_goal, parse_rules, read_rules

rules = read_rules("Rulefile")                   # or read_rules() for stdin
print(rules[1].pattern)                          # {base}.o
print(rules[0].deps)                             # ['{X}.fa', '{Y}.fa']
print(evaluate_goal("X != Y", {"X": "a", "Y": "b"}))  # True
```

A goal has the form `A != B` or `A == B`. Each side is looked up in the
bindings, and a name that is not bound is compared as a literal word. Any
other goal is treated as satisfied.

### What the rules module does not do

It does not match targets against the `{NAME}` placeholders in a pattern,
does not expand dependencies or recipes from bindings, and has no command of
its own. It parses rule files and evaluates goals against bindings you
supply.

## Job queue: `lu-queue`

```sh
lu-queue submit "make all"              # prints a job id such as local-1
lu-queue --engine slurm submit "run.sh" --slots 4 --mem 8G --time 01:00:00
lu-queue --engine sge submit "step2.sh" --deps 101,102 --extra=-q --extra=long.q
lu-queue --engine pbs status 12345.server
lu-queue --engine slurm wait 101 102
lu-queue --engine slurm cancel 101
lu-queue --engine slurm list
lu-queue --protocol-version
```

`--engine` (`local`, `slurm`, `sge` or `pbs`, default `local`) may be given
before or after the subcommand. `status` prints the state and exits with 0
when the job is done, 1 when it is pending or running, and 2 when it has
failed. `wait` prints `ID: state` lines to standard error and exits with 1
if any job failed. `list` prints `ID<TAB>state<TAB>command` lines. Errors,
such as an unknown engine or job, exit with 2.

Local jobs live only as long as the process that submitted them, and
`cancel` on a local job only checks that it exists; it does not stop it. The
`local` engine is therefore most useful from Python:

```python
from logicutils.jobqueue import JobStatus, SubmitArgs, create_engine

engine = create_engine("local")
job_id = engine.submit("true", [], SubmitArgs())
[(done_id, status)] = engine.wait([job_id])
assert status is JobStatus.DONE
```

`create_engine` raises `UnknownEngineError`, and engines raise
`JobNotFoundError` or `CommandFailedError`; all derive from `QueueError`.

## Development

```sh
pip install -e ".[test]"
pytest
```