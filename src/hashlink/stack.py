from types import TracebackType

from .item import Item


class EmptyStackError(IndexError):
    pass


class ItemStack:
    """
    LIFO of open Items awaiting a scan.

    Pushing hands ownership of an Item to the stack; popping hands it back
    to the caller, who must close it. Items still on the stack when the
    context exits are closed exactly once.
    """

    def __init__(self) -> None:
        self._items: list[Item] = []

    def __len__(self) -> int:
        return len(self._items)

    def is_empty(self) -> bool:
        return not self._items

    def push(self, item: Item) -> None:
        self._items.append(item)

    def peek(self) -> Item:
        if not self._items:
            raise EmptyStackError("stack is empty")
        return self._items[-1]

    def pop(self) -> Item:
        if not self._items:
            raise EmptyStackError("stack is empty")
        return self._items.pop()

    def close_all(self) -> None:
        while self._items:
            self._items.pop().close()

    def __enter__(self) -> "ItemStack":
        return self

    def __exit__(
        self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: TracebackType | None
    ) -> None:
        self.close_all()
