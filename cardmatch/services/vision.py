"""
Visual card identification against a reference-image embedding index.

The index directory holds:
 - embeddings.npy        float32, N x D image embeddings
 - cards_metadata.json   N dicts (id, name, set_name, number, rarity) in the same order

build_reference_index.py creates both files from catalog reference images.
"""

import asyncio
import json
import logging
import os
from typing import Any, List, Optional

import numpy as np
import torch
import torchvision.transforms as T
from PIL import Image
from sklearn.neighbors import NearestNeighbors
from torchvision import models

from . import regions
from .config import VisionConfig
from .types import VisualGuess

LOG = logging.getLogger("cardmatch.vision")

EMBEDDINGS_FILE = "embeddings.npy"
METADATA_FILE = "cards_metadata.json"


class SimpleEmbedder:
    """Image embedder using a torchvision resnet18 backbone.

    Accepts numpy arrays (BGR from OpenCV), PIL images or image file paths.
    """

    def __init__(self, device: str = "cpu"):
        self.device = torch.device(device)
        # keep only the pooled features
        backbone = models.resnet18(weights=models.ResNet18_Weights.DEFAULT)
        self.model = torch.nn.Sequential(*list(backbone.children())[:-1])
        self.model.eval().to(self.device)
        self.transform = T.Compose([
            T.Resize((224, 224)),
            T.ToTensor(),
            T.Normalize(mean=[0.485, 0.456, 0.406], std=[0.229, 0.224, 0.225]),
        ])

    def _pil_from_input(self, image: Any) -> Image.Image:
        if isinstance(image, Image.Image):
            return image.convert("RGB")
        if isinstance(image, str):
            return Image.open(image).convert("RGB")
        arr = np.asarray(image)
        if arr.ndim == 3 and arr.shape[2] == 3:
            arr = arr[..., ::-1]
        return Image.fromarray(arr.astype("uint8")).convert("RGB")

    def embed(self, image: Any) -> np.ndarray:
        img = self._pil_from_input(image)
        x = self.transform(img).unsqueeze(0).to(self.device)
        with torch.no_grad():
            feat = self.model(x).squeeze()
        vec = feat.cpu().numpy().astype(np.float32)
        norm = float(np.linalg.norm(vec))
        return vec / norm if norm > 0 else vec


class ReferenceIndex:
    def __init__(self, embeddings: np.ndarray, metadata: List[dict]):
        if len(embeddings) != len(metadata):
            raise ValueError("embeddings and metadata length differ")
        self.embeddings = embeddings
        self.metadata = metadata
        self.nn = NearestNeighbors(n_neighbors=min(5, len(embeddings)), metric="cosine")
        self.nn.fit(embeddings)

    @classmethod
    def load(cls, index_dir: str) -> Optional["ReferenceIndex"]:
        emb_path = os.path.join(index_dir, EMBEDDINGS_FILE)
        meta_path = os.path.join(index_dir, METADATA_FILE)
        if not os.path.exists(emb_path) or not os.path.exists(meta_path):
            return None
        embeddings = np.load(emb_path)
        with open(meta_path, "r", encoding="utf8") as fh:
            metadata = json.load(fh)
        if len(embeddings) == 0:
            return None
        return cls(embeddings, metadata)

    def query(self, embedding: np.ndarray, top_k: int = 1):
        dists, idxs = self.nn.kneighbors(embedding.reshape(1, -1), n_neighbors=min(top_k, len(self.embeddings)))
        return [(self.metadata[i], float(d)) for d, i in zip(dists[0], idxs[0])]


class EmbeddingVisualIdentifier:
    """Best-effort guess of name/set/number for a card photo; None when unsure."""

    def __init__(self, cfg: Optional[VisionConfig] = None, embedder: Optional[SimpleEmbedder] = None,
                 index: Optional[ReferenceIndex] = None):
        self.cfg = cfg or VisionConfig()
        self._embedder = embedder
        self._index = index
        self._loaded = index is not None

    def _ensure_loaded(self) -> bool:
        if not self._loaded:
            self._loaded = True
            if self.cfg.index_dir:
                self._index = ReferenceIndex.load(os.path.expanduser(self.cfg.index_dir))
            if self._index is None:
                LOG.warning("No visual reference index at %s", self.cfg.index_dir)
        if self._index is None:
            return False
        if self._embedder is None:
            self._embedder = SimpleEmbedder(self.cfg.device)
        return True

    def identify_sync(self, jpeg: bytes) -> Optional[VisualGuess]:
        if not self._ensure_loaded():
            return None
        image = regions.decode_image(jpeg)
        if image is None:
            return None
        meta, dist = self._index.query(self._embedder.embed(image), top_k=1)[0]
        LOG.info("Visual nearest neighbour %s (distance %.3f)", meta.get("name"), dist)
        if dist > self.cfg.max_distance:
            return None
        return VisualGuess(
            card_name=meta.get("name") or "",
            set_name=meta.get("set_name"),
            number=meta.get("number"),
            rarity=meta.get("rarity"),
        )

    async def identify(self, jpeg: bytes) -> Optional[VisualGuess]:
        return await asyncio.to_thread(self.identify_sync, jpeg)
