import argparse
import sys

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_0, K_1, K_2, K_3,
    K_4, K_5, K_6, K_7,
    K_8, K_9, K_a, K_b,
    K_c, K_d, K_e, K_f,
)

from chip8 import (
    Chip8, DecodeFailure, RandomByteSource, StackError,
    SCREEN_HEIGHT, SCREEN_WIDTH,
)


# ******************** STATIC SECTION
KEY_MAPPINGS = {
    K_0: 0x0,
    K_1: 0x1,
    K_2: 0x2,
    K_3: 0x3,
    K_4: 0x4,
    K_5: 0x5,
    K_6: 0x6,
    K_7: 0x7,
    K_8: 0x8,
    K_9: 0x9,
    K_a: 0xA,
    K_b: 0xB,
    K_c: 0xC,
    K_d: 0xD,
    K_e: 0xE,
    K_f: 0xF,
}

FPS = 60                # the timers are ticked once per frame
DEFAULT_CLOCK = 600     # instructions per second
SCALE = 15
BLUE = pygame.Color(80,69,155,255)
LIGHT_BLUE = pygame.Color(136,126,203,255)


# ******************** UTILITIES SECTION
def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("--clock", type=int, default=DEFAULT_CLOCK,
                        help=f"instructions executed per second (default {DEFAULT_CLOCK})")
    parser.add_argument("--scale", type=int, default=SCALE, help=f"pixel scale factor (default {SCALE})")
    parser.add_argument("--seed", type=int, default=None, help="seed of the random byte source, for reproducible runs")
    args = parser.parse_args(argv)
    if args.clock < 1:
        parser.error("--clock must be a positive number")
    if args.scale < 1:
        parser.error("--scale must be a positive number")
    return args

def read_rom(path):
    """read the raw ROM image from the user specified path"""
    with open(path, mode='rb') as f:
        return f.read()


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLUE, fg_color=LIGHT_BLUE):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def render(self, display):
        """paint the whole frame buffer, the change is visible after calling refresh"""
        self.surface.fill(self.background)
        for y in range(self.h):
            for x in range(self.w):
                if display.pixel_at(x, y):
                    pygame.draw.rect(
                        self.surface,
                        self.foreground,
                        (x * self.scale, y * self.scale, self.scale, self.scale)
                    )

    @staticmethod
    def refresh():
        pygame.display.flip()


# ******************** DRIVER SECTION
def handle_event(chip, event):
    """forward keypad events to the machine, return False when the user asked to quit"""
    if event.type == pygame.QUIT:
        return False
    if event.type == pygame.KEYDOWN:
        if event.key == pygame.K_ESCAPE:
            return False
        if event.key in KEY_MAPPINGS:
            chip.press(KEY_MAPPINGS[event.key])
    elif event.type == pygame.KEYUP and event.key in KEY_MAPPINGS:
        key = KEY_MAPPINGS[event.key]
        if chip.keypad[key]:    # the key may have gone down before the window had focus
            chip.release(key)
    return True

def run_frame(chip, cycles):
    """run a frame worth of instructions followed by one timer tick"""
    drawn = False
    for _ in range(cycles):
        result = chip.cycle()
        drawn = drawn or chip.draw
        if isinstance(result, DecodeFailure):
            chip.draw = drawn
            return result
    chip.draw = drawn
    chip.tick()
    return None

def crash_report(chip, reason):
    return f"********** THE EMULATOR CRASHED: {reason}\n{chip}"


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = parse_args(argv)
    rom = read_rom(args.file)
    chip = Chip8(rng=RandomByteSource(args.seed))
    chip.load_rom(rom)
    print(f"The ROM at path {args.file} has been loaded successfully")
    # pygame initialization
    pygame.init()
    clock = pygame.time.Clock()
    pygame.display.set_caption(os.path.basename(args.file))
    screen = Screen(s=args.scale)
    screen.refresh()
    cycles_per_frame = max(1, args.clock // FPS)
    # emulation loop
    run = True
    try:
        while run:
            clock.tick(FPS)
            for event in pygame.event.get():
                run = handle_event(chip, event) and run
            failure = run_frame(chip, cycles_per_frame)
            if chip.draw:
                screen.render(chip.display)
                screen.refresh()
            if failure is not None:
                sys.exit(crash_report(chip, f"unknown opcode 0x{failure.opcode:04x} at 0x{failure.address:04x}"))
    except StackError as se:
        sys.exit(crash_report(chip, se))
    finally:
        pygame.quit()


if __name__ == "__main__":
    main()
