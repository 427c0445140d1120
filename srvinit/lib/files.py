import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Optional

LOG = logging.getLogger(__name__)

BLOCK_BEGIN = '# BEGIN srvinit {name}'
BLOCK_END = '# END srvinit {name}'


def set_owner(path: Path, owner: Optional[str]) -> None:
    if owner:
        shutil.chown(path, owner, owner)


def backup_once(path: Path) -> Optional[Path]:
    """Copy path to path.bak unless a backup already exists."""
    backup = path.with_name(path.name + '.bak')
    if not path.exists() or backup.exists():
        return None
    shutil.copy2(path, backup)
    LOG.info("backed up %s to %s", path, backup)
    return backup


def write_file(path: Path, content: str, mode: Optional[int] = None,
               owner: Optional[str] = None) -> bool:
    """Atomically write content to path. Returns True if the file changed."""
    if path.exists() and path.read_text(encoding='utf-8') == content:
        if mode is not None and (path.stat().st_mode & 0o777) != mode:
            os.chmod(path, mode)
        set_owner(path, owner)
        return False

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f'.{path.name}.', dir=path.parent)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as fh:
            fh.write(content)
        if mode is not None:
            os.chmod(tmp, mode)
        elif path.exists():
            os.chmod(tmp, path.stat().st_mode & 0o777)
        else:
            os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    set_owner(path, owner)
    LOG.info("wrote %s", path)
    return True


def replace_block(text: str, name: str, body: str) -> str:
    """Replace the managed block called name in text, or append it."""
    begin = BLOCK_BEGIN.format(name=name)
    end = BLOCK_END.format(name=name)
    body = body.rstrip('\n')
    block = f"{begin}\n{body}\n{end}\n"

    pattern = re.compile(
        rf'^{re.escape(begin)}\n.*?^{re.escape(end)}\n?', re.MULTILINE | re.DOTALL
    )
    if pattern.search(text):
        return pattern.sub(lambda _: block, text, count=1)

    if text and not text.endswith('\n'):
        text += '\n'
    if text:
        text += '\n'
    return text + block
