import shlex
import sys
import traceback
from datetime import datetime
from time import sleep, perf_counter
from loguru import logger

from playsync.config import Config, TaskConfig, load_config, next_run
from playsync.connection import generate_backends
from playsync.mapper import Mapper
from playsync.storage import backup_state, load_state, save_state
from playsync.sync import Orchestrator, RunMode, RunReport

LOG_LEVELS = ["INFO", "DEBUG", "TRACE"]

# Tasks this process can run, the rest belong to other collaborators
HANDLED_TASKS = ("import", "export", "sync", "backup", "prune", "indexes")


def configure_logger(config: Config) -> None:
    logger.remove()
    if config.debug_level not in LOG_LEVELS:
        logger.add(sys.stdout)
        raise Exception("Invalid DEBUG_LEVEL, please choose between INFO, DEBUG, TRACE")
    logger.add(config.log_file, level=config.debug_level, mode="w")
    logger.add(sys.stdout, level=config.debug_level)


def parse_task_args(args: str) -> dict[str, bool]:
    flags = {"dry_run": False, "force_full": False}
    for arg in shlex.split(args or ""):
        if arg == "--dry-run":
            flags["dry_run"] = True
        elif arg == "--force-full":
            flags["force_full"] = True
        else:
            logger.debug(f"[System] Ignoring task argument '{arg}'")
    return flags


def run_task(orchestrator: Orchestrator, config: Config, task: TaskConfig) -> RunReport | None:
    flags = parse_task_args(task.args)
    logger.info(f"[System] Running task '{task.name}'")

    if task.name in (RunMode.IMPORT.value, RunMode.EXPORT.value, RunMode.SYNC.value):
        return orchestrator.run(
            task.name,
            dry_run=True if flags["dry_run"] else None,
            force_full=flags["force_full"],
        )

    if task.name == "backup":
        backup_state(config.state_file, config.backup_dir)
    elif task.name == "prune":
        orchestrator.mapper.prune([b.name for b in orchestrator.backends], grace=config.export_not_found)
        save_state(config.state_file, orchestrator.mapper.export_state())
    elif task.name == "indexes":
        orchestrator.mapper.reindex()
    else:
        logger.debug(f"[System] Task '{task.name}' has no handler in this process")
    return None


@logger.catch
def main() -> None:
    config = load_config()
    configure_logger(config)
    logger.debug(f"[System] Dryrun: {config.dry_run}")

    logger.info("[System] Initializing backend connections...")
    try:
        backends = generate_backends(config)
    except Exception as e:
        logger.error(f"Failed to create backend connections: {e}")
        return

    mapper = Mapper.from_config(config)
    mapper.import_state(load_state(config.state_file))
    orchestrator = Orchestrator(config, mapper, backends, state_file=config.state_file)

    times: list[float] = []
    try:
        if config.run_only_once:
            start = perf_counter()
            orchestrator.run(RunMode.SYNC)
            logger.info(f"[System] Pass completed in {perf_counter() - start:.2f}s")
            return

        tasks = {name: task for name, task in config.tasks.items() if name in HANDLED_TASKS}
        while True:
            now = datetime.now()
            upcoming = next_run(tasks, now)
            if upcoming is None:
                logger.warning("[System] No tasks enabled, exiting")
                return

            at, due = upcoming
            wait_seconds = max(0.0, (at - now).total_seconds())
            logger.info(f"[System] Next run at {at}: {', '.join(t.name for t in due)}")
            sleep(wait_seconds)

            for task in due:
                try:
                    start = perf_counter()
                    run_task(orchestrator, config, task)
                    times.append(perf_counter() - start)
                    logger.info(f"[System] Task '{task.name}' completed. Average time: {sum(times) / len(times):.2f}s")
                except Exception as error:
                    logger.error(error)
                    logger.error(traceback.format_exc())

    except KeyboardInterrupt:
        if len(times) > 0:
            logger.info(f"Average time: {sum(times) / len(times)}")
        logger.info("Exiting")
        return
    finally:
        logger.info("[System] Closing backend connections")
        for backend in backends:
            backend.client.close()
        if backends:
            session = backends[0].context.session
            if session is not None:
                session.close()


if __name__ == "__main__":
    main()
