import psutil


def get_system_stats() -> dict[str, float]:
    # Host CPU/RAM for the admin health view; worker counts come from the DB.
    cpu = psutil.cpu_percent()
    ram = psutil.virtual_memory().percent
    disk = psutil.disk_usage("/").percent

    return {
        "cpu_usage": cpu,
        "ram_usage": ram,
        "disk_usage": disk,
    }
