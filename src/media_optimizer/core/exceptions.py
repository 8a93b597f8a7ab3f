"""项目内使用的自定义异常定义。"""


class MediaOptimizerError(Exception):
    """基础异常类型。"""


class InvalidConfigurationError(MediaOptimizerError):
    """配置不合法时抛出。"""


class ItemNotFoundError(MediaOptimizerError):
    """条目或其文件、备份不存在。"""


class UnsupportedFormatError(MediaOptimizerError):
    """当前后端无法处理该格式（例如 GIF）。"""


class ResourceExceededError(MediaOptimizerError):
    """超出文件大小、内存或时间预算。"""


class RemoteFailureError(MediaOptimizerError):
    """远程压缩服务请求失败。"""


class IntegrityError(MediaOptimizerError):
    """输出字节不是有效图片，拒绝写回。"""


class PersistenceError(MediaOptimizerError):
    """记录存储读写失败。"""


class BackupError(MediaOptimizerError):
    """备份创建失败。"""
