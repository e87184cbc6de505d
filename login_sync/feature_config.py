"""
Per-feature configuration files.

A thin wrapper over configparser to set, delete and retrieve values in
INI files that features use to hand settings to their scripts. Every file
has a ``Defaults`` section whose values are returned for any key that a
section does not set itself.

Scripts that read many values should load the file once with
get_cfg_file() and query the returned view, rather than calling get_cfg()
repeatedly.
"""

import logging
from configparser import ConfigParser, Error as ConfigParserError
from datetime import datetime
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_SEC_NAME = 'Defaults'


class FeatureConfigError(Exception):
    """Raised when a feature config file cannot be opened or parsed."""
    pass


class FeatureConfigParser(ConfigParser):
    """ConfigParser that keeps key case and always writes the Defaults section."""

    def __init__(self):
        super().__init__(default_section=DEFAULT_SEC_NAME, interpolation=None, strict=False)

    def optionxform(self, optionstr):
        return optionstr

    def write(self, fp, space_around_delimiters=False):
        # configparser skips an empty default section
        if not self.defaults():
            fp.write(f"[{DEFAULT_SEC_NAME}]\n\n")
        super().write(fp, space_around_delimiters=space_around_delimiters)


class FeatureConfigView:
    """Read-only view of a parsed feature config file."""

    def __init__(self, parser: FeatureConfigParser, path: str = None):
        self.parser = parser
        self.path = path

    def get_value(self, section: str, var: str) -> Optional[str]:
        """Value of var in section, falling back to the Defaults section."""
        if self.parser.has_section(section):
            return self.parser.get(section, var, fallback=None)
        return self.parser.defaults().get(var)

    def get_default_value(self, var: str) -> Optional[str]:
        """Value of var in the Defaults section."""
        return self.parser.defaults().get(var)

    def sections(self) -> List[str]:
        return self.parser.sections()


class FeatureConfigStore:
    """
    Get/set/delete access to one feature config file.

    Each call opens, parses and (for changes) rewrites the file. No locking
    is done; callers serialize access themselves.
    """

    def __init__(self, path: str):
        self.path = path

    def setup(self, module_name: str, main_section: str) -> None:
        """
        Create or truncate the file with a header, the main section and Defaults.

        Args:
            module_name: Name of the generating module, recorded in the header
            main_section: Section the feature stores its values in
        """
        datestr = datetime.now().strftime('%a %b %d %H:%M:%S %Y')
        header = (
            f"# {self.path}\n"
            f"# Auto-generated by {module_name}.\n"
            f"# Generation Time: {datestr}\n"
            f"# Do not edit.\n"
        )

        parser = FeatureConfigParser()
        if main_section != DEFAULT_SEC_NAME:
            parser.add_section(main_section)

        self._write(parser, header)
        logger.debug(f"Created feature config {self.path} for {module_name}")

    def set(self, section: str, var: str, value, default: bool = False) -> None:
        """
        Set var to value, creating the section if needed.

        Args:
            default: Store the value in the Defaults section instead
        """
        parser, header = self._read()

        if default:
            section = DEFAULT_SEC_NAME
        if section != DEFAULT_SEC_NAME and not parser.has_section(section):
            parser.add_section(section)

        parser.set(section, var, str(value))
        self._write(parser, header)

    def delete(self, section: str, var: str, default: bool = False) -> None:
        """
        Remove var from section. Missing sections and keys are ignored.

        Args:
            default: Remove the value from the Defaults section instead
        """
        parser, header = self._read()

        if default:
            section = DEFAULT_SEC_NAME
        if section == DEFAULT_SEC_NAME or parser.has_section(section):
            parser.remove_option(section, var)

        self._write(parser, header)

    def get(self, section: str, var: str) -> Optional[str]:
        """Value of var in section, the Defaults value, or None."""
        return self.load().get_value(section, var)

    def get_default(self, var: str) -> Optional[str]:
        """Value of var in the Defaults section, or None."""
        return self.load().get_default_value(var)

    def load(self) -> FeatureConfigView:
        """Parse the file once for repeated reads."""
        parser, _ = self._read()
        return FeatureConfigView(parser, self.path)

    def _read(self) -> Tuple[FeatureConfigParser, str]:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                text = f.read()
        except OSError as e:
            raise FeatureConfigError(f"Could not open config file {self.path}: {e}")

        parser = FeatureConfigParser()
        try:
            parser.read_string(self._join_continuations(text), source=self.path)
        except ConfigParserError as e:
            raise FeatureConfigError(f"Could not create ini instance for {self.path} : {e}")

        return parser, self._leading_comments(text)

    def _write(self, parser: FeatureConfigParser, header: str) -> None:
        try:
            with open(self.path, 'w', encoding='utf-8') as f:
                f.write(header)
                parser.write(f)
        except OSError as e:
            raise FeatureConfigError(f"Could not open config file {self.path}: {e}")

    @staticmethod
    def _join_continuations(text: str) -> str:
        """Fold lines ending in a backslash into the line that follows."""
        lines = []
        pending = ''
        for line in text.splitlines():
            if line.endswith('\\'):
                pending += line[:-1]
                continue
            lines.append(pending + line)
            pending = ''
        if pending:
            lines.append(pending)
        return '\n'.join(lines) + '\n'

    @staticmethod
    def _leading_comments(text: str) -> str:
        """Comment block at the top of the file, kept across rewrites."""
        lines = []
        for line in text.splitlines():
            if not line.lstrip().startswith(('#', ';')):
                break
            lines.append(line + '\n')
        return ''.join(lines)


def setup_cfg_file(mod_name: str, cfg_file: str, main_section: str) -> None:
    FeatureConfigStore(cfg_file).setup(mod_name, main_section)


def set_cfg(cfg_file: str, section: str, var: str, value, default: bool = False) -> None:
    FeatureConfigStore(cfg_file).set(section, var, value, default)


def del_cfg(cfg_file: str, section: str, var: str, value=None, default: bool = False) -> None:
    """Remove var from section; value is accepted for call compatibility and ignored."""
    FeatureConfigStore(cfg_file).delete(section, var, default)


def get_cfg(cfg_file: str, section: str, var: str) -> Optional[str]:
    """
    Read one value.

    Opens and parses the file on every call; use get_cfg_file() and
    get_cfg_value() for repeated reads.
    """
    return FeatureConfigStore(cfg_file).get(section, var)


def get_default_cfg(cfg_file: str, var: str) -> Optional[str]:
    return FeatureConfigStore(cfg_file).get_default(var)


def get_cfg_file(cfg_file: str) -> Optional[FeatureConfigView]:
    """
    Load a config file for repeated reads.

    Returns:
        A view to pass to get_cfg_value(), or None if the file cannot be read
    """
    try:
        return FeatureConfigStore(cfg_file).load()
    except FeatureConfigError as e:
        logger.debug(str(e))
        return None


def get_cfg_value(cfg: Optional[FeatureConfigView], section: str, var: str) -> Optional[str]:
    if cfg is None:
        return None
    return cfg.get_value(section, var)


def get_default_cfg_value(cfg: Optional[FeatureConfigView], var: str) -> Optional[str]:
    if cfg is None:
        return None
    return cfg.get_default_value(var)
