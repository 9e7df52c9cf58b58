"""系统提示词加载工具。

默认使用配置中的 system_prompt；若配置了 system_prompt_file，
则从该文件读取提示词文本，用于构造 ChatMessage(role="system")。
"""

from pathlib import Path

from chat_core.config.settings import settings


def load_system_prompt() -> str:
    """加载对话前置的系统提示词文本。"""

    if settings.system_prompt_file:
        return Path(settings.system_prompt_file).expanduser().read_text(encoding="utf-8").strip()
    return settings.system_prompt
