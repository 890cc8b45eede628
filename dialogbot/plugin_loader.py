"""
Plugin loader and registry for end-of-interaction modules.
"""

import os
import importlib.util
import logging
from pathlib import Path
from typing import Optional

from .models import EndModule

logger = logging.getLogger(__name__)

BOT_ROOT = Path(__file__).parent.parent
MODULES_DIR = BOT_ROOT / "modules"


class ModuleRegistry:
    """
    Holds the end modules available to this process, looked up by name.

    Built once at startup and handed to the routers.
    """

    def __init__(self, modules: Optional[list[EndModule]] = None):
        self._modules: dict[str, EndModule] = {}
        for module in modules or []:
            self.register(module)

    def register(self, module: EndModule) -> None:
        name = module.name()
        if name in self._modules:
            logger.warning(f"Module '{name}' registered twice; keeping the latest")
        self._modules[name] = module

    def get(self, name: str) -> Optional[EndModule]:
        return self._modules.get(name)

    def names(self) -> list[str]:
        return list(self._modules.keys())

    def __len__(self) -> int:
        return len(self._modules)

    def resolve_env(self, module: EndModule) -> dict[str, str]:
        """Read NAME_VAR (upper case) for each variable the module declares."""
        return {name: os.getenv(name, "") for name in module.env_var_names()}

    def run_end_modules(
        self,
        names: list[str],
        payload: dict[str, str],
        questions: dict[str, str]
    ) -> list[str]:
        """
        Run each named module against a completed interaction.

        Missing modules and module failures are logged and skipped.

        Returns:
            Names of the modules that ran without error
        """
        if names:
            logger.debug(f"We found {len(names)} modules to run")

        succeeded = []
        for name in names:
            module = self.get(name)
            if module is None:
                logger.warning(f"Referenced module not found: {name}")
                continue

            logger.debug(f"Running module {name}")
            try:
                module.run(dict(payload), self.resolve_env(module), dict(questions))
            except Exception as e:
                logger.warning(f"Error running module {name}: {e}")
                continue

            succeeded.append(name)

        return succeeded


class PluginLoader:
    """
    Discovers and loads EndModule implementations from subdirectories.

    Each module folder must contain:
    - module.py with a get_module() factory
    """

    def __init__(self, root_dir: Path | None = None, allowed_modules: list[str] | None = None):
        self.root_dir = Path(root_dir) if root_dir is not None else MODULES_DIR
        self.allowed_modules = allowed_modules
        self.excluded_dirs = {'__pycache__', '.git', '.venv', '.tmp'}

    def discover_modules(self) -> list[str]:
        """
        Find all directories that contain a module.py.

        Returns:
            Sorted list of module directory names
        """
        found = []

        if not self.root_dir.is_dir():
            logger.warning(f"Modules directory not found: {self.root_dir}")
            return found

        for item in sorted(self.root_dir.iterdir()):
            if not item.is_dir():
                continue
            if item.name in self.excluded_dirs or item.name.startswith('.'):
                continue
            if self.allowed_modules is not None and item.name not in self.allowed_modules:
                continue

            if (item / "module.py").exists():
                found.append(item.name)
                logger.debug(f"Discovered module: {item.name}")

        return found

    def load_module(self, dir_name: str) -> Optional[EndModule]:
        """
        Load a single module by directory name.

        Returns:
            EndModule instance or None if loading fails
        """
        module_path = self.root_dir / dir_name / "module.py"

        if not module_path.exists():
            logger.error(f"Module file not found: {module_path}")
            return None

        try:
            spec = importlib.util.spec_from_file_location(
                f"dialogbot_modules.{dir_name}",
                module_path
            )
            py_module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(py_module)

            if hasattr(py_module, 'get_module'):
                module = py_module.get_module()
                if isinstance(module, EndModule):
                    return module
                logger.error(f"get_module() in {dir_name} did not return an EndModule")
            else:
                logger.error(f"No get_module() in {dir_name}/module.py")

        except Exception as e:
            logger.exception(f"Failed to load module '{dir_name}': {e}")

        return None

    def load_registry(self) -> ModuleRegistry:
        """Load every discovered module into a new registry."""
        registry = ModuleRegistry()

        for dir_name in self.discover_modules():
            module = self.load_module(dir_name)
            if module:
                registry.register(module)
                logger.info(f"Loaded module: {module.name()} ({dir_name})")

        return registry
