"""
Command-line interface for envelope-encrypted file sharing.

Provides text-based menu for:
- Choosing an identity and registering its RSA key
- Exporting / importing / clearing the password-protected private key
- File upload with client-side AES-GCM encryption
- File download with key unwrapping and decryption
- File sharing between identities
- Listing (time filter, sorting) and (batch) deletion of file records
"""

import asyncio
from datetime import datetime, timezone
from getpass import getpass
from pathlib import Path
from typing import List, Optional

import config
from accounts.password import GetpassPasswordProvider
from accounts.session import Session
from accounts.storage import JSONSecureStore
from accounts.vault import KeyVault
from errors import AuthError, IntegrityError, VaultError
from storage.blobstore import BlobStore, DirectoryBlobBackend
from storage.file_manager import (
    register_public_key,
    upload_file,
    download_file,
    list_files,
    list_shared_files,
    share_file,
    delete_files,
)
from storage.ledger import JSONLedgerBackend, MetadataLedger
from storage.models import FileRecord, SORT_KEYS, SORT_ORDERS, TIME_FILTERS


def create_session(identity: str) -> Session:
    return Session(
        identity,
        vault=KeyVault(JSONSecureStore(config.KEYSTORE_PATH)),
        blobs=BlobStore(DirectoryBlobBackend(config.BLOB_DIR)),
        ledger=MetadataLedger(JSONLedgerBackend(config.LEDGER_PATH)),
        passwords=GetpassPasswordProvider(),
    )


def _when(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _short(address: str) -> str:
    return f"{address[:8]}...{address[-4:]}" if len(address) > 16 else address


def _report(action: str, exc: VaultError) -> None:
    if isinstance(exc, AuthError):
        print(f"❌ {action} failed (key or password): {exc}")
    elif isinstance(exc, IntegrityError):
        print(f"❌ {action} failed (integrity check): {exc}")
    else:
        print(f"❌ {action} failed: {exc}")


def print_menu(session: Optional[Session]) -> None:
    print("\n" + "=" * 50)
    if session:
        print(f"  🔐 Envelope Vault - Logged in as: {session.identity}")
    else:
        print("  🔐 Envelope Vault")
    print("=" * 50)

    if session is None:
        print("  1) Log in as identity")
        print("  0) Quit")
    else:
        print("  1) Upload file")
        print("  2) Download file")
        print("  3) List my files")
        print("  4) List shared files")
        print("  5) Share a file")
        print("  6) Delete files")
        print("  7) Register RSA key")
        print("  8) Export private key backup")
        print("  9) Import private key backup")
        print("  10) Clear private key from this device")
        print("  11) Log out")
        print("  0) Quit")
    print("=" * 50)


def handle_login() -> Optional[Session]:
    print("\n🔑 Login")
    identity = input("Identity: ").strip()
    if not identity:
        print("❌ Identity cannot be empty")
        return None
    session = create_session(identity)
    print(f"✅ Welcome, {session.identity}!")
    if not session.vault.exists(session.identity):
        print("   No private key on this device yet. Register (7) or import (9) one.")
    return session


def handle_register(session: Session) -> None:
    print("\n📝 Register RSA Key")
    overwrite = False
    if session.vault.exists(session.identity):
        answer = input("A private key already exists on this device. Overwrite? (yes/no): ")
        if answer.strip().lower() != "yes":
            print("   Cancelled")
            return
        overwrite = True
    try:
        asyncio.run(register_public_key(session, overwrite=overwrite))
        print("✅ RSA key pair generated, private key stored, public key registered")
    except VaultError as e:
        _report("Registration", e)


def handle_upload(session: Session) -> None:
    print("\n📤 Upload File")
    filepath = input("File path: ").strip()
    if not filepath:
        print("❌ File path cannot be empty")
        return
    public = input("Public file? (Y/n): ").strip().lower() != "n"
    try:
        record = asyncio.run(upload_file(session, filepath, is_public=public))
        print(f"\n✅ File uploaded successfully!")
        print(f"   🔑 CID: {record.content_address}")
        print(f"   🗝  Key CID: {record.key_blob_address}")
        print(f"   🔒 Encrypted with AES-256-GCM, key wrapped with RSA-OAEP")
    except VaultError as e:
        _report("Upload", e)


def _pick_time_filter() -> str:
    choice = input(f"Filter ({'/'.join(TIME_FILTERS)}) [all]: ").strip()
    return choice if choice in TIME_FILTERS else "all"


def _pick_sorting():
    key = input(f"Sort by ({'/'.join(SORT_KEYS)}) [timestamp]: ").strip().lower()
    order = input(f"Order ({'/'.join(SORT_ORDERS)}) [desc]: ").strip().lower()
    return (key if key in SORT_KEYS else "timestamp", order if order in SORT_ORDERS else "desc")


def _print_records(records: List[FileRecord]) -> None:
    for i, r in enumerate(records, 1):
        visibility = "public" if r.is_public else "private"
        print(f"   {i}. {_short(r.content_address)} .{r.extension or 'bin'} ({visibility}) {_when(r.created_at)}")


def handle_download(session: Session) -> None:
    print("\n📥 Download File")
    address = input("CID (leave empty to pick from your files): ").strip()
    if not address:
        try:
            files = asyncio.run(list_files(session))
            shared = asyncio.run(list_shared_files(session))
        except VaultError as e:
            _report("Listing", e)
            return
        choices = [f.content_address for f in files] + [g.content_address for g in shared]
        if not choices:
            print("   No files available")
            return
        _print_records(files)
        for i, g in enumerate(shared, len(files) + 1):
            print(f"   {i}. {_short(g.content_address)} (from {g.grantor})")
        try:
            index = int(input("\nSelect file number: ")) - 1
        except ValueError:
            print("❌ Invalid input")
            return
        if index < 0 or index >= len(choices):
            print("❌ Invalid selection")
            return
        address = choices[index]

    dest = input("Destination directory (Enter for default): ").strip() or None
    try:
        target = asyncio.run(download_file(session, address, dest))
        print(f"\n✅ File decrypted and saved to: {target}")
    except VaultError as e:
        _report("Download", e)


def handle_list_files(session: Session) -> None:
    print("\n📁 My Files")
    time_filter = _pick_time_filter()
    sort_key, sort_order = _pick_sorting()
    try:
        records = asyncio.run(list_files(session, time_filter=time_filter, sort_key=sort_key, sort_order=sort_order))
    except VaultError as e:
        _report("Listing", e)
        return
    if not records:
        print("   No files uploaded yet")
        return
    _print_records(records)


def handle_list_shared(session: Session) -> None:
    print("\n📥 Files Shared With Me")
    try:
        grants = asyncio.run(list_shared_files(session))
    except VaultError as e:
        _report("Listing", e)
        return
    if not grants:
        print("   No files shared with you")
        return
    for g in grants:
        print(f"   • {g.content_address} (from {g.grantor}, {_when(g.created_at)})")


def handle_share(session: Session) -> None:
    print("\n🔗 Share a File")
    address = input("CID of the file to share: ").strip()
    recipient = input("Share with (identity): ").strip()
    if not address or not recipient:
        print("❌ CID and recipient are required")
        return
    try:
        grant = asyncio.run(share_file(session, address, recipient))
        print(f"✅ File shared with {grant.grantee}")
    except VaultError as e:
        _report("Share", e)


def handle_delete(session: Session) -> None:
    print("\n🗑️ Delete Files")
    try:
        records = asyncio.run(list_files(session))
    except VaultError as e:
        _report("Listing", e)
        return
    if not records:
        print("   No files to delete")
        return
    _print_records(records)
    picked = input("\nFile numbers to delete (comma-separated): ").strip()
    try:
        indexes = sorted({int(p) - 1 for p in picked.split(",") if p.strip()})
    except ValueError:
        print("❌ Invalid input")
        return
    selected = [records[i].content_address for i in indexes if 0 <= i < len(records)]
    if not selected:
        print("   Nothing selected")
        return
    confirm = input(f"Delete {len(selected)} file(s)? (yes/no): ").strip().lower()
    if confirm != "yes":
        print("   Cancelled")
        return

    result = asyncio.run(delete_files(session, selected))
    if result.succeeded:
        print(f"✅ Deleted {len(result.succeeded)} file(s)")
    for address, error in result.failed:
        print(f"❌ {_short(address)}: {error}")


def handle_export(session: Session) -> None:
    print("\n💾 Export Private Key")
    target = Path(input("Save to [encrypted-private-key.pem]: ").strip() or "encrypted-private-key.pem")
    try:
        target.write_text(session.vault.export_pem(session.identity) + "\n", encoding="utf-8")
        print(f"✅ Encrypted private key written to {target}")
    except VaultError as e:
        _report("Export", e)


def handle_import(session: Session) -> None:
    print("\n📂 Import Private Key")
    source = Path(input("PEM file: ").strip()).expanduser()
    if not source.is_file():
        print(f"❌ File not found: {source}")
        return
    pem = source.read_text(encoding="utf-8")
    overwrite = False
    if session.vault.exists(session.identity):
        overwrite = input("Replace the key stored on this device? (yes/no): ").strip().lower() == "yes"
        if not overwrite:
            print("   Cancelled")
            return
    try:
        if "ENCRYPTED RSA PRIVATE KEY" in pem:
            password = getpass("Password of the backup: ")
            session.vault.import_pem(session.identity, pem, password, overwrite=overwrite)
        else:
            password = getpass("Set a password to protect the imported key: ")
            session.vault.import_private_key(session.identity, pem, password, overwrite=overwrite)
        print("✅ Private key imported")
    except VaultError as e:
        _report("Import", e)


def handle_clear(session: Session) -> None:
    print("\n🧹 Clear Private Key")
    if not session.vault.exists(session.identity):
        print("   No private key stored on this device")
        return
    print("   Without a backup, files encrypted for this key can no longer be opened here.")
    confirm = input("Remove the private key from this device? (yes/no): ").strip().lower()
    if confirm != "yes":
        print("   Cancelled")
        return
    session.forget_key()
    session.vault.clear(session.identity)
    print("✅ Private key removed from this device")


def main():
    config.configure_logging()
    session: Optional[Session] = None

    print("\n🔐 Envelope Vault")
    print("   Encrypted • Content-addressed • Shareable\n")

    handlers = {
        "1": handle_upload,
        "2": handle_download,
        "3": handle_list_files,
        "4": handle_list_shared,
        "5": handle_share,
        "6": handle_delete,
        "7": handle_register,
        "8": handle_export,
        "9": handle_import,
        "10": handle_clear,
    }

    while True:
        print_menu(session)
        choice = input("> ").strip()

        if choice == "0":
            if session:
                session.close()
            print("\nGoodbye! 👋")
            break

        if session is None:
            if choice == "1":
                session = handle_login()
            else:
                print("❌ Invalid choice")
        elif choice == "11":
            print(f"\n👋 Logged out from {session.identity}")
            session.close()
            session = None
        elif choice in handlers:
            handlers[choice](session)
        else:
            print("❌ Invalid choice")


if __name__ == "__main__":
    main()
