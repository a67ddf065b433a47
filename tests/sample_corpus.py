"""
A small SoftDevice-style header corpus used across the test modules.

Trap numbers:
  0x60  sd_ble_enable            pointer argument
  0x61  sd_ble_evt_get           two pointers
  0x62  sd_ble_gap_device_name_set   const pointers + scalar
  0x63  sd_ble_time_get          8-bit + 64-bit argument, 64-bit result
  0x64  sd_ble_addr_make         7-byte struct result (hidden pointer)
  0x65  sd_ble_sec_mode_set      1-byte struct by value
  0x66  sd_ble_evt_peek          pointer to a struct defined after its typedef
  0x20  sd_app_evt_wait          no arguments
  0x21  sd_nvic_system_reset     void result
  0x22  sd_temp_get              float result
"""

from __future__ import annotations

from pathlib import Path


NRF_SVC_H = """\
#ifndef NRF_SVC__
#define NRF_SVC__

#ifdef SVCALL_AS_NORMAL_FUNCTION
#define SVCALL(number, return_type, signature) return_type signature
#else
#define SVCALL(number, return_type, signature) \\
  _Pragma("GCC diagnostic push") \\
  return_type __attribute__((naked)) signature \\
  _Pragma("GCC diagnostic pop")
#endif

#endif
"""

BLE_TYPES_H = """\
#ifndef BLE_TYPES_H__
#define BLE_TYPES_H__

#include <stdint.h>

#define BLE_SVC_BASE            0x60
#define BLE_GAP_ADDR_LEN        (6)
#define BLE_GAP_DEVNAME_MAX_LEN (BLE_GAP_ADDR_LEN * 4 + 7)

/**@brief GAP connection security modes. */
typedef struct
{
  uint8_t sm : 4;                     /**< Security Mode. */
  uint8_t lv : 4;                     /**< Level. */
} ble_gap_conn_sec_mode_t;

/**@brief Bluetooth Low Energy address. */
typedef struct
{
  uint8_t addr_id_peer : 1;
  uint8_t addr_type    : 7;
  uint8_t addr[BLE_GAP_ADDR_LEN];
} ble_gap_addr_t;

typedef struct ble_evt_s ble_evt_t;

struct ble_evt_s
{
  uint16_t evt_id;
  uint16_t evt_len;
  ble_gap_addr_t peer;
  union
  {
    uint32_t raw;
    uint8_t  bytes[4];
  } payload;
};

#endif
"""

BLE_H = """\
#ifndef BLE_H__
#define BLE_H__

#include "nrf_svc.h"
#include "ble_types.h"

enum BLE_COMMON_SVCS
{
  SD_BLE_ENABLE = BLE_SVC_BASE,       /**< Enable and initialize the BLE stack */
  SD_BLE_EVT_GET,                     /**< Get an event from the pending events queue. */
  SD_BLE_GAP_DEVICE_NAME_SET,
  SD_BLE_TIME_GET,
  SD_BLE_ADDR_MAKE,
  SD_BLE_SEC_MODE_SET,
  SD_BLE_EVT_PEEK,
};

/**@brief Enable the BLE stack.
 *
 * @param[in, out] p_app_ram_base Start of the application RAM region.
 */
SVCALL(SD_BLE_ENABLE, uint32_t, sd_ble_enable(uint32_t * p_app_ram_base));

SVCALL(SD_BLE_EVT_GET, uint32_t, sd_ble_evt_get(uint8_t *p_dest, uint16_t *p_len));

SVCALL(SD_BLE_GAP_DEVICE_NAME_SET, uint32_t, sd_ble_gap_device_name_set(ble_gap_conn_sec_mode_t const *p_write_perm, uint8_t const *p_dev_name, uint16_t len));

SVCALL(SD_BLE_TIME_GET, uint64_t, sd_ble_time_get(uint8_t flags, uint64_t offset));

SVCALL(SD_BLE_ADDR_MAKE, ble_gap_addr_t, sd_ble_addr_make(uint8_t addr_type));

SVCALL(SD_BLE_SEC_MODE_SET, uint32_t, sd_ble_sec_mode_set(ble_gap_conn_sec_mode_t mode));

SVCALL(SD_BLE_EVT_PEEK, uint32_t, sd_ble_evt_peek(ble_evt_t const *p_evt));

#endif
"""

NRF_SOC_H = """\
#ifndef NRF_SOC_H__
#define NRF_SOC_H__

#include <stdint.h>
#include "nrf.h"
#include "nrf_svc.h"

#define SOC_SVC_BASE (0x20)

enum NRF_SOC_SVCS
{
  SD_APP_EVT_WAIT = SOC_SVC_BASE,
  SD_NVIC_SYSTEM_RESET,
  SD_TEMP_GET,
};

/**@brief Waits for an application event. */
SVCALL(SD_APP_EVT_WAIT, uint32_t, sd_app_evt_wait(void));

SVCALL(SD_NVIC_SYSTEM_RESET, void, sd_nvic_system_reset(void));

SVCALL(SD_TEMP_GET, float, sd_temp_get(void));

#endif
"""

# Excluded by default; it would not parse.
NRF_NVIC_H = """\
#include "nrf_soc.h"
SVCALL(SD_NVIC_BROKEN, uint32_t, sd_nvic_broken
"""

SAMPLE_HEADERS = {
    "nrf_svc.h": NRF_SVC_H,
    "ble_types.h": BLE_TYPES_H,
    "ble.h": BLE_H,
    "nrf_soc.h": NRF_SOC_H,
    "nrf_nvic.h": NRF_NVIC_H,
}

EXPECTED_TRAPS = {
    "sd_ble_enable": 0x60,
    "sd_ble_evt_get": 0x61,
    "sd_ble_gap_device_name_set": 0x62,
    "sd_ble_time_get": 0x63,
    "sd_ble_addr_make": 0x64,
    "sd_ble_sec_mode_set": 0x65,
    "sd_ble_evt_peek": 0x66,
    "sd_app_evt_wait": 0x20,
    "sd_nvic_system_reset": 0x21,
    "sd_temp_get": 0x22,
}


def write_corpus(root: Path, headers: dict[str, str] | None = None) -> Path:
    """Write `headers` (default: the sample corpus) below `root`/headers."""
    src = root / "headers"
    for rel, text in (SAMPLE_HEADERS if headers is None else headers).items():
        path = src / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    src.mkdir(parents=True, exist_ok=True)
    return src


def with_header(rel: str, text: str) -> dict[str, str]:
    """The sample corpus plus one extra header."""
    headers = dict(SAMPLE_HEADERS)
    headers[rel] = text
    return headers


# Records whose layout is not the natural one.  Offsets in bytes:
#   sd_aligned_t        x 0, a 4, b 6; size 8
#   sd_member_packed_t  tag 0, value 1; size 5
#   struct sd_packed    kind 0, len 1, data 3; size 7
#   sd_pack1_t          a 0, b 1; size 5
#   struct sd_pack2     a 0, b 2, c 6; size 8
LAYOUT_H = """\
#ifndef SD_LAYOUT_H__
#define SD_LAYOUT_H__

#include <stdint.h>
#include "nrf_svc.h"

typedef struct
{
  uint32_t x;
  uint8_t  a;
  uint8_t  b __attribute__((aligned(2)));
} sd_aligned_t;

typedef struct
{
  uint8_t  tag;
  uint32_t value __attribute__((packed));
} sd_member_packed_t;

struct sd_packed
{
  uint8_t  kind;
  uint16_t len;
  uint32_t data;
} __attribute__((packed));
typedef struct sd_packed sd_packed_t;

#pragma pack(push, 1)
typedef struct
{
  uint8_t  a;
  uint32_t b;
} sd_pack1_t;
#pragma pack(pop)

#pragma pack(push, 2)
typedef struct sd_pack2
{
  uint8_t  a;
  uint32_t b;
  uint8_t  c;
} sd_pack2_t;
#pragma pack(pop)

SVCALL (0x30, uint32_t, sd_layout_get(sd_aligned_t * p_aligned, sd_member_packed_t * p_member));
SVCALL(0x31, uint32_t, sd_layout_set(const sd_packed_t * p_packed,
                                     const sd_pack1_t * p_pack1,
                                     const sd_pack2_t * p_pack2));

#endif
"""

LAYOUT_OFFSETS = {
    "sd_aligned_t": (8, {"x": 0, "a": 4, "b": 6}),
    "sd_member_packed_t": (5, {"tag": 0, "value": 1}),
    "sd_packed_t": (7, {"kind": 0, "len": 1, "data": 3}),
    "sd_pack1_t": (5, {"a": 0, "b": 1}),
    "sd_pack2_t": (8, {"a": 0, "b": 2, "c": 6}),
}


def layout_headers() -> dict[str, str]:
    return {"nrf_svc.h": NRF_SVC_H, "sd_layout.h": LAYOUT_H}
