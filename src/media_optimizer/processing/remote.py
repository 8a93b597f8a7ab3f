"""远程压缩服务客户端。

两个可互换的实现：

* ``ReSmushItProvider``：无需密钥，提交文件的公网 URL，服务端返回结果地址后下载覆盖；
* ``TinyPNGProvider``：需要 API key，直接上传文件字节，下载压缩结果。

所有失败都记录日志并返回 ``False``，不会向调用方抛出异常。
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional
from urllib.parse import quote

import httpx

from media_optimizer.core.config import RemoteConfig
from media_optimizer.core.exceptions import IntegrityError, RemoteFailureError
from media_optimizer.core.models import ConnectionStatus
from media_optimizer.processing.inspector import detect_format, verify_image_bytes
from media_optimizer.utils.files import atomic_write_bytes

LOGGER = logging.getLogger(__name__)

USER_AGENT = "media-optimizer/0.1 (+https://github.com/media-optimizer)"
DEFAULT_QUALITY = 82


class RemoteProvider(ABC):
    """远程压缩服务接口。"""

    name: str = ""

    def __init__(self, config: Optional[RemoteConfig] = None, client: Optional[httpx.Client] = None) -> None:
        self.config = config or RemoteConfig()
        self._client = client

    @abstractmethod
    def service_name(self) -> str:
        """面向用户的服务名称。"""

    @abstractmethod
    def is_configured(self) -> bool:
        """服务所需的配置是否齐全。"""

    @abstractmethod
    def _fetch_optimized(self, client: httpx.Client, path: Path, quality: int) -> bytes:
        """请求远程服务并返回压缩后的字节，失败时抛出 RemoteFailureError。"""

    def ping(self, client: httpx.Client) -> ConnectionStatus:
        return ConnectionStatus(ok=True, message=f"{self.service_name()} 已配置")

    def optimize(self, path: Path, quality: Optional[int] = None) -> bool:
        """压缩 ``path`` 并覆盖写回，成功返回 True。"""

        if not self.is_configured():
            LOGGER.error("%s 未配置，无法优化 %s", self.service_name(), path.name)
            return False
        if not path.is_file():
            LOGGER.error("文件不存在或不可读：%s", path)
            return False

        original_format = detect_format(path)
        try:
            with self._session() as client:
                data = self._fetch_optimized(client, path, quality or DEFAULT_QUALITY)
        except RemoteFailureError as exc:
            LOGGER.error("%s 优化失败 %s：%s", self.service_name(), path.name, exc)
            return False
        except httpx.HTTPError as exc:
            LOGGER.error("%s 请求异常 %s：%s", self.service_name(), path.name, exc)
            return False
        except OSError as exc:
            LOGGER.error("读取文件失败 %s：%s", path, exc)
            return False

        try:
            verify_image_bytes(data, original_format)
            atomic_write_bytes(path, data)
        except IntegrityError as exc:
            LOGGER.error("%s 返回内容无效 %s：%s", self.service_name(), path.name, exc)
            return False
        except OSError as exc:
            LOGGER.error("写回优化结果失败 %s：%s", path, exc)
            return False

        LOGGER.info("%s 优化完成：%s", self.service_name(), path.name)
        return True

    @contextmanager
    def _session(self) -> Iterator[httpx.Client]:
        if self._client is not None:
            yield self._client
            return
        with httpx.Client(timeout=self.config.timeout, headers={"User-Agent": USER_AGENT}) as client:
            yield client

    def _download(self, client: httpx.Client, url: str, **kwargs: object) -> bytes:
        response = client.get(url, timeout=self.config.timeout, **kwargs)
        if response.status_code != 200:
            raise RemoteFailureError(f"下载压缩结果返回 HTTP {response.status_code}")
        if not response.content:
            raise RemoteFailureError("下载的压缩结果为空")
        return response.content


class ReSmushItProvider(RemoteProvider):
    """reSmush.it：免费、无需密钥，但要求文件可通过公网 URL 访问。"""

    name = "resmushit"
    API_ENDPOINT = "https://api.resmush.it/ws.php"

    def service_name(self) -> str:
        return "reSmush.it"

    def is_configured(self) -> bool:
        return True

    def _fetch_optimized(self, client: httpx.Client, path: Path, quality: int) -> bytes:
        image_url = public_url_for(path, self.config.public_root, self.config.public_base_url)
        if not image_url:
            raise RemoteFailureError("文件不在公开目录下，无法生成公网 URL")

        response = client.post(
            self.API_ENDPOINT,
            data={"img": image_url, "qlty": str(quality)},
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            timeout=self.config.timeout,
        )
        if response.status_code != 200:
            raise RemoteFailureError(f"接口返回 HTTP {response.status_code}")

        body = _json_body(response)
        if "error" in body or not body.get("dest"):
            raise RemoteFailureError(str(body.get("error_long") or body.get("error") or "未知接口错误"))

        LOGGER.debug(
            "reSmush.it 结果 %s：%s -> %s (%s%%)",
            path.name,
            body.get("src_size", "?"),
            body.get("dest_size", "?"),
            body.get("percent", "?"),
        )
        return self._download(client, str(body["dest"]))

    def ping(self, client: httpx.Client) -> ConnectionStatus:
        response = client.get(self.API_ENDPOINT, timeout=self.config.timeout)
        if response.status_code >= 500:
            return ConnectionStatus(ok=False, message=f"reSmush.it 不可用 (HTTP {response.status_code})")
        return ConnectionStatus(ok=True, message="reSmush.it 可访问")


class TinyPNGProvider(RemoteProvider):
    """TinyPNG：需要 API key，上传原始字节。"""

    name = "tinypng"
    SHRINK_ENDPOINT = "https://api.tinify.com/shrink"

    def service_name(self) -> str:
        return "TinyPNG"

    def is_configured(self) -> bool:
        return bool(self.config.tinypng_api_key.strip())

    @property
    def _auth(self) -> tuple[str, str]:
        return ("api", self.config.tinypng_api_key.strip())

    def _fetch_optimized(self, client: httpx.Client, path: Path, quality: int) -> bytes:
        payload = path.read_bytes()
        response = client.post(self.SHRINK_ENDPOINT, content=payload, auth=self._auth, timeout=self.config.timeout)
        if response.status_code not in (200, 201):
            raise RemoteFailureError(f"接口返回 HTTP {response.status_code} {_error_message(response)}".strip())

        body = _json_body(response)
        output = body.get("output")
        result_url = output.get("url") if isinstance(output, dict) else None
        result_url = result_url or response.headers.get("Location")
        if not result_url:
            raise RemoteFailureError("响应中缺少结果地址")
        return self._download(client, str(result_url), auth=self._auth)

    def ping(self, client: httpx.Client) -> ConnectionStatus:
        # 空请求：密钥有效时返回 400 InputMissing，无效时返回 401
        response = client.post(self.SHRINK_ENDPOINT, content=b"", auth=self._auth, timeout=self.config.timeout)
        if response.status_code == 401:
            return ConnectionStatus(ok=False, message="TinyPNG API key 无效")
        if response.status_code >= 500:
            return ConnectionStatus(ok=False, message=f"TinyPNG 不可用 (HTTP {response.status_code})")
        return ConnectionStatus(ok=True, message="TinyPNG 可访问，API key 有效")


PROVIDERS: dict[str, type[RemoteProvider]] = {
    ReSmushItProvider.name: ReSmushItProvider,
    TinyPNGProvider.name: TinyPNGProvider,
}


def public_url_for(path: Path, public_root: Optional[Path], base_url: str) -> Optional[str]:
    """按配置的目录 → URL 前缀规则把本地路径映射为公网 URL。"""

    if public_root is None or not base_url:
        return None
    try:
        relative = path.resolve().relative_to(Path(public_root).resolve())
    except ValueError:
        return None
    if not base_url.startswith(("http://", "https://")):
        return None
    return f"{base_url.rstrip('/')}/{quote(relative.as_posix())}"


def get_provider(config: RemoteConfig, client: Optional[httpx.Client] = None) -> RemoteProvider:
    """按配置选择远程服务；所选服务未配置时回退到 reSmush.it。"""

    if config.service == TinyPNGProvider.name:
        provider = TinyPNGProvider(config, client)
        if provider.is_configured():
            LOGGER.debug("使用 TinyPNG 远程服务")
            return provider
        LOGGER.warning("已选择 TinyPNG 但未配置 API key，回退到 reSmush.it")

    LOGGER.debug("使用 reSmush.it 远程服务")
    return ReSmushItProvider(config, client)


def available_services() -> list[dict[str, object]]:
    return [
        {"name": "resmushit", "label": "reSmush.it", "description": "免费接口，无需密钥", "requires_key": False},
        {"name": "tinypng", "label": "TinyPNG", "description": "每月 500 次免费，需要密钥", "requires_key": True},
    ]


def check_connection(
    service: str,
    config: RemoteConfig,
    client: Optional[httpx.Client] = None,
    probe: bool = False,
) -> ConnectionStatus:
    """检查服务配置，``probe`` 为真时额外探测可达性；不会修改任何文件。"""

    provider_cls = PROVIDERS.get(service, ReSmushItProvider)
    provider = provider_cls(config, client)
    if not provider.is_configured():
        return ConnectionStatus(ok=False, message=f"{provider.service_name()} 未正确配置")

    LOGGER.info("检测远程服务连接：%s", provider.service_name())
    if not probe:
        return ConnectionStatus(ok=True, message=f"{provider.service_name()} 已配置，可以使用")

    try:
        with provider._session() as session:
            return provider.ping(session)
    except httpx.HTTPError as exc:
        return ConnectionStatus(ok=False, message=f"{provider.service_name()} 无法连接：{exc}")


def _json_body(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError as exc:
        raise RemoteFailureError("响应不是合法的 JSON") from exc
    if not isinstance(body, dict):
        raise RemoteFailureError("响应 JSON 结构不正确")
    return body


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    return str(body.get("message", "")) if isinstance(body, dict) else ""
