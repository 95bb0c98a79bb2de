# publisher/generator.py
import os
import random
import time

import requests
from faker import Faker

# Konfigurasi
TARGET_URL = os.getenv("TARGET_URL", "http://api:8080")
ARTICLE_IDS = [a for a in os.getenv("ARTICLE_IDS", "").split(",") if a]
READ_COUNT = int(os.getenv("READ_COUNT", "1000"))  # Jumlah read yg akan dikirim
DELAY = float(os.getenv("DELAY", "0.1"))  # Delay antar request (detik)
ANONYMOUS_RATIO = float(os.getenv("ANONYMOUS_RATIO", "0.3"))

fake = Faker()
READERS = [fake.uuid4() for _ in range(50)]


def pick_reader():
    """Reader login (X-User-Id) atau anonim (None)"""
    if random.random() < ANONYMOUS_RATIO:
        return None
    return random.choice(READERS)


def send_read(article_id, reader_id, is_reread=False):
    """Membaca artikel via HTTP GET, seperti client biasa"""
    headers = {"X-User-Id": reader_id} if reader_id else {}
    try:
        response = requests.get(f"{TARGET_URL}/articles/{article_id}", headers=headers, timeout=5)
        tag = "[RE-READ]" if is_reread else "[READ]"
        print(f"{tag} {article_id} | Reader: {reader_id or 'guest'} | Status: {response.status_code}")
    except requests.RequestException as e:
        print(f"[ERROR] Failed to read {article_id}: {e}")


def main():
    if not ARTICLE_IDS:
        raise SystemExit("ARTICLE_IDS is empty, nothing to read")

    print(f"Starting read generator... Target: {TARGET_URL}")
    # Tunggu sebentar agar API siap sepenuhnya
    time.sleep(5)

    for _ in range(READ_COUNT):
        article_id = random.choice(ARTICLE_IDS)
        reader_id = pick_reader()
        send_read(article_id, reader_id)

        # SIMULASI RE-READ: 30% reader me-refresh halaman dalam window rate limit,
        # read kedua seharusnya tidak tercatat
        if random.random() < 0.30:
            time.sleep(0.05)
            send_read(article_id, reader_id, is_reread=True)

        time.sleep(DELAY)

    print("Read generator finished.")


if __name__ == "__main__":
    main()
