"""Workspace state: products, lifestyle scenes, results and videos.

The Workspace is the single owner of every stored media handle. History
collections are most-recent-first and unique by id; the active selections
and the open preview only ever point at items a collection owns, so a
delete releases the handle once and clears whatever referenced it.

Mutating methods never await. The async actions (generate, combine,
animate, remove background) read their inputs up front and re-read the
current collections after the vendor call, so two queued mutations never
overwrite each other.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

from errors import SceneError, UnsupportedModel, ValidationError
from media_codec import MediaPayload, ensure_image_payload, payload_to_bytes
from media_store import MediaStore
from scene_core import DEFAULT_COMPOSITE_MODEL, CompositeModel, SceneClient

log = logging.getLogger(__name__)

DEFAULT_REFINEMENT = "Place the product naturally in the scene, replacing any similar item already present."
DEFAULT_SCENE_PROMPT = "A modern, sunlit kitchen counter with plants in the background"

LOADING_KINDS = ("lifestyle", "combine", "video", "background")


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class StoredImage:
    handle: str
    mime_type: str
    id: str = field(default_factory=_new_id)


@dataclass
class StoredVideo:
    handle: str
    prompt: str
    mime_type: str = "video/mp4"
    id: str = field(default_factory=_new_id)


@dataclass
class Product:
    """One product photo plus optional reference angles.

    The primary image is never also listed among the angles.
    """

    primary_image: StoredImage
    angle_images: List[StoredImage] = field(default_factory=list)
    id: str = field(default_factory=_new_id)

    @property
    def images(self) -> List[StoredImage]:
        return [self.primary_image, *self.angle_images]

    def find_angle(self, angle_id: str) -> StoredImage:
        for angle in self.angle_images:
            if angle.id == angle_id:
                return angle
        raise KeyError(f"No angle image with id {angle_id!r}")

    def set_primary(self, angle_id: str) -> None:
        """Swap an angle in as primary; the old primary goes to the end of the angles."""
        if angle_id == self.primary_image.id:
            return
        angle = self.find_angle(angle_id)
        self.angle_images = [a for a in self.angle_images if a.id != angle_id] + [self.primary_image]
        self.primary_image = angle


T = TypeVar("T", Product, StoredImage, StoredVideo)


def _prepend(items: Sequence[T], item: T) -> List[T]:
    return [item] + [i for i in items if i.id != item.id]


def _find(items: Sequence[T], item_id: str, kind: str) -> T:
    for item in items:
        if item.id == item_id:
            return item
    raise KeyError(f"No {kind} with id {item_id!r}")


class Workspace:
    def __init__(self, client: SceneClient, store: Optional[MediaStore] = None) -> None:
        self.client = client
        self.store = store if store is not None else MediaStore()

        self.products: List[Product] = []
        self.lifestyles: List[StoredImage] = []
        self.results: List[StoredImage] = []
        self.videos: List[StoredVideo] = []

        self.product: Optional[Product] = None
        self.lifestyle: Optional[StoredImage] = None
        self.result: Optional[StoredImage] = None
        self.video: Optional[StoredVideo] = None
        self.preview: Optional[StoredImage] = None

        self.loading: Dict[str, bool] = {kind: False for kind in LOADING_KINDS}
        self.error: Optional[str] = None
        self.video_status: Optional[str] = None

    @property
    def busy(self) -> bool:
        return any(self.loading.values())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reject(self, exc: SceneError) -> SceneError:
        self.error = str(exc)
        log.info("Rejected: %s", exc)
        return exc

    @contextmanager
    def _loading(self, kind: str) -> Iterator[None]:
        if self.loading[kind]:
            raise self._reject(ValidationError(f"A {kind} request is already in progress."))
        self.loading[kind] = True
        self.error = None
        try:
            yield
        except Exception as exc:
            self.error = str(exc)
            log.error("%s action failed: %s", kind.title(), exc)
            raise
        finally:
            self.loading[kind] = False

    def _store_image(self, payload: MediaPayload) -> StoredImage:
        data = payload_to_bytes(payload)
        return StoredImage(handle=self.store.acquire(data, payload.mime_type), mime_type=payload.mime_type)

    def _release(self, *items: Any) -> None:
        for item in items:
            self.store.release(item.handle)
            if self.preview is not None and self.preview.id == item.id:
                self.preview = None

    async def _load_payload(self, image: StoredImage) -> MediaPayload:
        try:
            return await asyncio.to_thread(self.store.to_payload, image.handle)
        except KeyError:
            # released by a delete that ran while this action was queued
            raise ValidationError("The selected image was deleted.") from None

    def _require_product(self, message: str) -> Product:
        if self.product is None:
            raise self._reject(ValidationError(message))
        return self.product

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def create_product(self, payload: MediaPayload) -> Product:
        image = self._store_image(ensure_image_payload(payload))
        product = Product(primary_image=image)
        self.products = _prepend(self.products, product)
        self.product = product
        self.error = None
        log.debug("Product created: %s", product.id)
        return product

    def select_product(self, product_id: str) -> Product:
        self.product = _find(self.products, product_id, "product")
        return self.product

    def deselect_product(self) -> None:
        self.product = None

    def delete_product(self, product_id: str) -> None:
        product = _find(self.products, product_id, "product")
        self.products = [p for p in self.products if p.id != product_id]
        self._release(*product.images)
        if self.product is not None and self.product.id == product_id:
            self.product = None
        log.debug("Product deleted: %s", product_id)

    def add_angle(self, payload: MediaPayload) -> StoredImage:
        product = self._require_product("Please select or upload a product before adding angles.")
        image = self._store_image(ensure_image_payload(payload))
        product.angle_images = [*product.angle_images, image]
        return image

    def delete_angle(self, angle_id: str) -> None:
        product = self._require_product("Please select a product first.")
        angle = product.find_angle(angle_id)
        product.angle_images = [a for a in product.angle_images if a.id != angle_id]
        self._release(angle)

    def set_primary(self, angle_id: str) -> Product:
        product = self._require_product("Please select a product first.")
        product.set_primary(angle_id)
        return product

    async def remove_product_background(self) -> Optional[StoredImage]:
        """Replace the active product's primary image with a transparent cut-out."""
        product = self._require_product("Please select a product first.")
        original = product.primary_image
        with self._loading("background"):
            payload = await self._load_payload(original)
            cutout = await self.client.remove_background(payload)

            # the product or image may have been deleted while we waited
            current = next((p for p in self.products if p.id == product.id), None)
            if current is None or original.id not in {i.id for i in current.images}:
                log.info("Background removal finished for a deleted image; discarding")
                return None
            image = self._store_image(cutout)
            if current.primary_image.id == original.id:
                current.primary_image = image
            else:
                current.angle_images = [image if a.id == original.id else a for a in current.angle_images]
            self._release(original)
            return image

    # ------------------------------------------------------------------
    # Lifestyle scenes
    # ------------------------------------------------------------------

    def upload_lifestyle(self, payload: MediaPayload) -> StoredImage:
        image = self._store_image(ensure_image_payload(payload))
        self.lifestyles = _prepend(self.lifestyles, image)
        self.lifestyle = image
        self.error = None
        return image

    async def generate_lifestyle(self, prompt: str) -> StoredImage:
        if not (prompt or "").strip():
            raise self._reject(ValidationError("Please enter a prompt to generate an image."))
        with self._loading("lifestyle"):
            self.lifestyle = None
            payload = await self.client.generate_scene(prompt)
            image = self._store_image(payload)
            self.lifestyles = _prepend(self.lifestyles, image)
            self.lifestyle = image
            return image

    def select_lifestyle(self, image_id: str) -> StoredImage:
        self.lifestyle = _find(self.lifestyles, image_id, "lifestyle image")
        return self.lifestyle

    def deselect_lifestyle(self) -> None:
        self.lifestyle = None

    def delete_lifestyle(self, image_id: str) -> None:
        image = _find(self.lifestyles, image_id, "lifestyle image")
        self.lifestyles = [i for i in self.lifestyles if i.id != image_id]
        self._release(image)
        if self.lifestyle is not None and self.lifestyle.id == image_id:
            self.lifestyle = None

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    async def combine(
        self,
        refinement: str = DEFAULT_REFINEMENT,
        model: Any = DEFAULT_COMPOSITE_MODEL,
    ) -> StoredImage:
        product, lifestyle = self.product, self.lifestyle
        if product is None or lifestyle is None:
            raise self._reject(
                ValidationError("Please select a product and a lifestyle image from the workspace.")
            )
        try:
            model = CompositeModel.parse(model)
        except UnsupportedModel as exc:
            raise self._reject(exc) from None
        if model is not CompositeModel.GEMINI:
            raise self._reject(
                UnsupportedModel(f"The {model.value!r} compositing model is not implemented yet. Please choose Gemini.")
            )
        with self._loading("combine"):
            self.result = None
            primary, background, *angles = await asyncio.gather(
                self._load_payload(product.primary_image),
                self._load_payload(lifestyle),
                *(self._load_payload(a) for a in product.angle_images),
            )
            payload = await self.client.composite(primary, angles, background, refinement, model)
            image = self._store_image(payload)
            self.results = _prepend(self.results, image)
            self.result = image
            log.info("Result created: %s (%d reference angles)", image.id, len(angles))
            return image

    def select_result(self, image_id: str) -> StoredImage:
        image = _find(self.results, image_id, "result")
        self.result = image
        self.preview = image
        return image

    def delete_result(self, image_id: str) -> None:
        image = _find(self.results, image_id, "result")
        self.results = [i for i in self.results if i.id != image_id]
        self._release(image)
        if self.result is not None and self.result.id == image_id:
            self.result = None

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------

    async def animate(
        self,
        prompt: str,
        on_status: Optional[Callable[[str], None]] = None,
    ) -> StoredVideo:
        source = self.result
        if source is None:
            raise self._reject(ValidationError("Please select a result image to animate."))
        if not (prompt or "").strip():
            raise self._reject(ValidationError("Please describe the motion for the video."))

        def report(message: str) -> None:
            self.video_status = message
            if on_status is not None:
                on_status(message)

        with self._loading("video"):
            self.video_status = None
            payload = await self._load_payload(source)
            raw, mime_type = await self.client.animate(payload, prompt, report)
            video = StoredVideo(handle=self.store.acquire(raw, mime_type), prompt=prompt, mime_type=mime_type)
            self.videos = _prepend(self.videos, video)
            self.video = video
            return video

    def select_video(self, video_id: str) -> StoredVideo:
        self.video = _find(self.videos, video_id, "video")
        return self.video

    def delete_video(self, video_id: str) -> None:
        video = _find(self.videos, video_id, "video")
        self.videos = [v for v in self.videos if v.id != video_id]
        self._release(video)
        if self.video is not None and self.video.id == video_id:
            self.video = None

    # ------------------------------------------------------------------
    # Preview and output
    # ------------------------------------------------------------------

    def open_preview(self, image_id: str) -> StoredImage:
        candidates = [*self.results, *self.lifestyles, *(i for p in self.products for i in p.images)]
        self.preview = _find(candidates, image_id, "image")
        return self.preview

    def close_preview(self) -> None:
        self.preview = None

    def export(self, handle: str) -> Tuple[bytes, str, str]:
        """Return ``(bytes, mime_type, download_filename)`` for a stored handle."""
        data, mime_type = self.store.open(handle)
        ext = mimetypes.guess_extension(mime_type) or ""
        if ext == ".jpe":
            ext = ".jpg"
        kind = "video" if mime_type.startswith("video/") else "scene"
        return data, mime_type, f"product-{kind}-{int(time.time() * 1000)}{ext}"

    def snapshot(self) -> Dict[str, Any]:
        def _id(item: Any) -> Optional[str]:
            return item.id if item is not None else None

        return {
            "products": [asdict(p) for p in self.products],
            "lifestyles": [asdict(i) for i in self.lifestyles],
            "results": [asdict(i) for i in self.results],
            "videos": [asdict(v) for v in self.videos],
            "active": {
                "product": _id(self.product),
                "lifestyle": _id(self.lifestyle),
                "result": _id(self.result),
                "video": _id(self.video),
            },
            "preview": _id(self.preview),
            "loading": dict(self.loading),
            "busy": self.busy,
            "error": self.error,
            "video_status": self.video_status,
        }

    def close(self) -> None:
        """Release every handle still held by the histories."""
        for product in self.products:
            for image in product.images:
                self.store.release(image.handle)
        for item in [*self.lifestyles, *self.results, *self.videos]:
            self.store.release(item.handle)
        self.products, self.lifestyles, self.results, self.videos = [], [], [], []
        self.product = self.lifestyle = self.result = self.video = self.preview = None
