import os
import hashlib
import requests

# Configuration
BASE_URL = "http://localhost:8080"
UPLOAD_DIR = "./uploads"            # server-side upload directory, for the integrity check
TEST_FILE = "test_file.bin"         # File to upload
CHUNK_SIZE = 1024 * 1024            # 1MB chunks
INTERRUPT_AFTER = 2                 # chunks sent before the simulated disconnect

# Helper functions
def probe(filename: str) -> int:
    """Ask the server how many bytes it already holds for this file"""
    response = requests.head(f"{BASE_URL}/upload", params={"filename": filename})
    response.raise_for_status()
    return int(response.headers.get("x-uploaded-bytes", "0"))

def send_chunk(filename: str, index: int, total: int, data: bytes) -> int:
    response = requests.post(
        f"{BASE_URL}/upload",
        data={"filename": filename, "chunkIndex": str(index), "totalChunks": str(total)},
        files={"chunk": (filename, data, "application/octet-stream")},
    )
    response.raise_for_status()
    return int(response.text)

def heartbeat(upload_ids) -> str:
    response = requests.post(f"{BASE_URL}/heartbeat", json={"uploadIds": list(upload_ids)})
    response.raise_for_status()
    return response.text

def upload_file(path: str, stop_after=None):
    """Upload file in chunks, resuming from whatever the server reports"""
    filename = os.path.basename(path)
    file_size = os.path.getsize(path)
    total = max(1, -(-file_size // CHUNK_SIZE))

    already = probe(filename)
    start_index = already // CHUNK_SIZE
    print(f"Uploading {filename} ({file_size} bytes, {total} chunks), server has {already} bytes")

    session_id = None
    with open(path, "rb") as f:
        f.seek(start_index * CHUNK_SIZE)
        for index in range(start_index, total):
            chunk = f.read(CHUNK_SIZE)
            try:
                session_id = send_chunk(filename, index, total, chunk)
            except requests.exceptions.RequestException as e:
                print(f"Failed to upload chunk {index}: {str(e)}")
                if hasattr(e, 'response') and e.response is not None:
                    print("Server response:", e.response.text)
                return None
            print(f"Uploaded chunk {index + 1}/{total} -> session {session_id}")
            if stop_after is not None and index + 1 - start_index >= stop_after and index + 1 < total:
                print("Simulating a dropped connection")
                return session_id
    return session_id

def verify_files(original: str, uploaded: str):
    """Verify file integrity using MD5 checksum"""
    print("\nVerifying file integrity...")

    def get_md5(filepath):
        hash_md5 = hashlib.md5()
        with open(filepath, "rb") as f:
            for chunk in iter(lambda: f.read(4096), b""):
                hash_md5.update(chunk)
        return hash_md5.hexdigest()

    if not os.path.exists(uploaded):
        print(f"Uploaded file {uploaded} not found")
        return False

    orig_hash = get_md5(original)
    up_hash = get_md5(uploaded)
    print(f"Original file MD5: {orig_hash}")
    print(f"Uploaded file MD5: {up_hash}")
    if orig_hash == up_hash:
        print("Files match perfectly!")
        return True
    print("Files differ!")
    return False

def main():
    # Create a test file if it doesn't exist
    if not os.path.exists(TEST_FILE):
        print(f"Creating test file {TEST_FILE}...")
        with open(TEST_FILE, 'wb') as f:
            f.write(os.urandom(5 * 1024 * 1024 + 123))  # 5MB random file, short last chunk
        print(f"Created {TEST_FILE} ({os.path.getsize(TEST_FILE)} bytes)")

    print("\n=== Partial upload ===")
    session_id = upload_file(TEST_FILE, stop_after=INTERRUPT_AFTER)
    if session_id is None:
        print("Partial upload failed")
        return

    print("\n=== Heartbeat ===")
    print(heartbeat([session_id]))

    print("\n=== Probe ===")
    print(f"Server reports {probe(TEST_FILE)} bytes")

    print("\n=== Resume ===")
    resumed_id = upload_file(TEST_FILE)
    if resumed_id != session_id:
        print(f"Resume opened session {resumed_id}, expected {session_id}")
        return

    print("\n=== Probe after completion ===")
    print(f"Server reports {probe(TEST_FILE)} bytes (0 means no open session)")

    if not verify_files(TEST_FILE, os.path.join(UPLOAD_DIR, os.path.basename(TEST_FILE))):
        print("Integrity verification failed")
        return

    print("\nAll checks completed successfully!")

if __name__ == "__main__":
    main()
