"""汎用レジストリ基類.

登録順を保持する名前付きレジストリを提供します。
グローバルなシングルトンは持たず、必要な箇所で明示的に生成して参照を渡します。
テストでのリセットは新しいインスタンスを生成することで行います。

内部ロックは持ちません。同一インスタンスへの並行書き込みは呼び出し側で直列化してください。
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Generic, TypeVar


T = TypeVar("T")


class Registry(Generic[T]):
    """汎用レジストリ基底クラス.

    Example:
        >>> class AgentRegistry(Registry[Agent]):
        ...     pass
        >>> registry = AgentRegistry()
        >>> registry.register("tester-agent", agent)
        >>> registry.get("tester-agent")
    """

    def __init__(self) -> None:
        """レジストリを初期化."""
        self._items: dict[str, T] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def register(self, name: str, item: T) -> None:
        """アイテムを登録.

        既存の名前を再登録した場合は上書きしますが、登録順の位置は維持されます。

        Args:
            name: アイテム名（一意識別子）
            item: 登録するアイテム

        Raises:
            ValueError: 名前が空の場合
            TypeError: 名前が文字列でない場合、またはアイテムが None の場合
        """
        if not isinstance(name, str):
            msg = f"Name must be a string, got {type(name).__name__}"
            raise TypeError(msg)
        if not name or not name.strip():
            msg = "Name cannot be empty or whitespace only"
            raise ValueError(msg)
        if item is None:
            msg = "Item cannot be None"
            raise TypeError(msg)

        if name in self._items:
            self._logger.warning(f"Overwriting existing item: {name}")
        self._items[name] = item
        self._logger.debug(f"Registered: {name}")

    def get(self, name: str) -> T | None:
        """アイテムを取得.

        Args:
            name: アイテム名

        Returns:
            アイテム、存在しない場合 None
        """
        return self._items.get(name)

    def unregister(self, name: str) -> bool:
        """アイテムを削除.

        Returns:
            削除成功した場合 True
        """
        if name in self._items:
            del self._items[name]
            self._logger.debug(f"Unregistered: {name}")
            return True
        return False

    def list_names(self) -> list[str]:
        """登録済みアイテム名一覧を登録順で取得."""
        return list(self._items.keys())

    def list_all(self) -> list[T]:
        """全アイテムを登録順で取得."""
        return list(self._items.values())

    def __len__(self) -> int:
        """登録済みアイテム数を取得."""
        return len(self._items)

    def __contains__(self, name: object) -> bool:
        """アイテムの存在確認."""
        return name in self._items

    def __iter__(self) -> Iterator[T]:
        """登録順にアイテムを返す."""
        return iter(list(self._items.values()))
