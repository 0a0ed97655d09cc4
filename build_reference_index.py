#!/usr/bin/env python3
"""
build_reference_index.py

Create image embeddings of catalog reference images for visual identification.

Outputs:
 - embeddings.npy         (float32, shape: N x D)
 - cards_metadata.json    (list of dicts with minimal metadata in same order)

Usage:
  python build_reference_index.py --set-id sv3pt5 --set-id sv4 --out-dir data/embeddings

Point vision.index_dir in config.yaml (or CARDMATCH_INDEX_DIR) at the output directory.
"""
import argparse
import asyncio
import json
import logging
import os

import numpy as np
from tqdm import tqdm

from cardmatch.services import regions
from cardmatch.services.config import load_config_file
from cardmatch.services.catalog import PokemonTcgClient
from cardmatch.services.vision import EMBEDDINGS_FILE, METADATA_FILE, SimpleEmbedder

LOG = logging.getLogger("cardmatch.build_index")


def card_metadata(entry) -> dict:
    return {
        "id": entry.id,
        "name": entry.name,
        "set_name": entry.set_name,
        "number": entry.number,
        "rarity": entry.rarity,
    }


async def collect(set_ids, cfg):
    """Fetch entries and decoded reference images for the requested sets."""
    items = []
    async with PokemonTcgClient(cfg.catalog) as client:
        for set_id in set_ids:
            entries = await client.cards_in_set(set_id)
            print(f"Set {set_id}: {len(entries)} cards")
            for entry in tqdm(entries, desc=f"images {set_id}"):
                if not entry.image_url:
                    continue
                data = await client.fetch_image(entry.image_url)
                image = regions.decode_image(data) if data else None
                if image is None:
                    LOG.warning("Skipping %s: no usable reference image", entry.id)
                    continue
                items.append((entry, image))
    return items


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--set-id", "-s", action="append", required=True,
                        help="Catalog set id to index (repeatable)")
    parser.add_argument("--out-dir", "-o", default="data/embeddings", help="Output directory")
    parser.add_argument("--device", default="cpu", help="torch device for the embedder")
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    os.makedirs(args.out_dir, exist_ok=True)
    cfg = load_config_file(args.config)

    items = asyncio.run(collect(args.set_id, cfg))
    if not items:
        raise SystemExit("No reference images downloaded; nothing to index.")

    print("Loading embedder on", args.device)
    embedder = SimpleEmbedder(args.device)
    embeddings = np.stack([embedder.embed(image) for _, image in tqdm(items, desc="embedding")])
    embeddings = embeddings.astype(np.float32)
    metadata = [card_metadata(entry) for entry, _ in items]

    emb_path = os.path.join(args.out_dir, EMBEDDINGS_FILE)
    meta_path = os.path.join(args.out_dir, METADATA_FILE)

    print("Saving embeddings ->", emb_path)
    np.save(emb_path, embeddings)

    print("Saving metadata ->", meta_path)
    with open(meta_path, "w", encoding="utf-8") as fh:
        json.dump(metadata, fh, ensure_ascii=False)

    print("Done. Embeddings shape:", embeddings.shape)


if __name__ == "__main__":
    main()
